import unittest

from imagesource import tagged


def numbers():
    return tagged.TaggedCollection([
        tagged.new(1, 'one'),
        tagged.new(2, 'two', 'second'),
        tagged.new(3, 'three', 'third'),
        tagged.new(23, 'twenty-three', 'twenty', 'third'),
        tagged.new(4, 'four', ''),
        tagged.new(9, 'nine'),
    ])


def catalogers():
    def tag(name, *tags):
        return tagged.new(name, *(tags + (name,)))

    return tagged.TaggedCollection([
        tag('js-1', 'i', 'js'),
        tag('js-2', 'd', 'js'),
        tag('js-3', 'i', 'd', 'js'),
        tag('jv-1', 'i', 'd', 'jv'),
        tag('jv-2', 'i', 'd', 'jv'),
        tag('py-1', 'i', 'd', 'py'),
        tag('py-2', 'd', 'py'),
        tag('py-3', 'i', 'd', 'py'),
        tag('py-4', 'i', 'py'),
        tag('sc-1'),
    ])


class TaggedItemTestCase(unittest.TestCase):
    def test_has_tag(self):
        item = tagged.new('x', 'a', 'b')
        self.assertTrue(item.has_tag('b'))
        self.assertTrue(item.has_tag('z', 'a'))
        self.assertFalse(item.has_tag('z'))
        self.assertFalse(item.has_tag())

    def test_duplicate_tags_are_inert(self):
        item = tagged.new('x', 'a', 'a')
        self.assertEqual(('a', 'a'), item.tags)
        c = tagged.TaggedCollection([item])
        self.assertEqual(['x'], c.select('a').collect())
        self.assertEqual([], c.remove('a').collect())

    def test_immutable(self):
        item = tagged.new('x', 'a')
        with self.assertRaises(AttributeError):
            item.value = 'y'


class SelectRemoveTestCase(unittest.TestCase):
    def test_select_by_tag(self):
        self.assertEqual([2], numbers().select('two').collect())

    def test_select_by_multiple(self):
        self.assertEqual([1, 3, 23],
                         numbers().select('one', 'third').collect())

    def test_select_nothing_selects_nothing(self):
        self.assertEqual(0, len(numbers().select()))

    def test_remove_nothing_is_a_noop(self):
        c = numbers()
        self.assertEqual(c, c.remove())

    def test_remove_by_tag(self):
        self.assertEqual(
            [1],
            numbers().select('one', 'twenty-three').remove('third').collect())

    def test_select_is_idempotent(self):
        c = numbers()
        once = c.select('third', 'one')
        self.assertEqual(once, once.select('third', 'one'))

    def test_receiver_not_mutated(self):
        c = numbers()
        before = c.collect()
        c.select('one')
        c.remove('one')
        c.join(tagged.new(100, 'hundred'))
        c.sort('nine')
        self.assertEqual(before, c.collect())

    def test_empty_tag_is_a_tag(self):
        self.assertEqual([4], numbers().select('').collect())

    def test_has_tag(self):
        c = numbers()
        self.assertTrue(c.has_tag('twenty'))
        self.assertFalse(c.has_tag('hundred'))


class JoinTestCase(unittest.TestCase):
    def test_join_appends_novel_items(self):
        c = numbers().select('one').join(tagged.new(5, 'five'),
                                         tagged.new(6, 'six'))
        self.assertEqual([1, 5, 6], c.collect())

    def test_join_skips_present_values(self):
        c = numbers().select('one', 'two')
        joined = c.join(tagged.new(2, 'other-tags'))
        self.assertEqual([1, 2], joined.collect())
        self.assertEqual(('two', 'second'), joined[1].tags)

    def test_join_is_idempotent(self):
        c = numbers().select('one')
        x = tagged.new(7, 'seven')
        self.assertEqual(c.join(x), c.join(x).join(x))

    def test_join_nothing_is_a_noop(self):
        c = numbers()
        self.assertEqual(c, c.join())

    def test_join_checks_against_receiver_only(self):
        c = tagged.TaggedCollection().join(tagged.new(1, 'a'),
                                           tagged.new(1, 'b'))
        self.assertEqual([1, 1], c.collect())

    def test_custom_equality(self):
        c = tagged.TaggedCollection(
            [tagged.new('Alpha', 'a')],
            equals=lambda x, y: x.lower() == y.lower())
        self.assertEqual(['Alpha'], c.join(tagged.new('ALPHA')).collect())
        self.assertTrue(c.has_value('alpha'))

    def test_equality_is_carried_to_derived(self):
        def equals(x, y):
            return x.lower() == y.lower()

        c = tagged.TaggedCollection([tagged.new('Alpha', 'a')],
                                    equals=equals)
        self.assertIs(equals, c.select('a').equals)
        self.assertIs(equals, c.sort('a')[:1].equals)


class SortTestCase(unittest.TestCase):
    def test_sort_by_single(self):
        self.assertEqual([4, 1, 2, 3, 23, 9],
                         numbers().sort('four').collect())

    def test_sort_by_multiple(self):
        self.assertEqual([3, 23, 2, 1, 4, 9],
                         numbers().sort('third', 'two').collect())

    def test_sort_by_duplicate_tags(self):
        self.assertEqual(
            [2, 3, 23, 1, 4, 9],
            numbers().sort('two', 'third', 'two', 'third').collect())

    def test_sort_order_of_tags_matters(self):
        c = tagged.TaggedCollection([
            tagged.new('a', 't1'),
            tagged.new('b', 't2'),
            tagged.new('c', 't1', 't2'),
        ])
        self.assertEqual(['a', 'c', 'b'], c.sort('t1', 't2').collect())
        self.assertEqual(['b', 'c', 'a'], c.sort('t2', 't1').collect())

    def test_item_placed_once(self):
        c = tagged.TaggedCollection([
            tagged.new('A', 't1', 't2'),
            tagged.new('B', 't2'),
        ])
        self.assertEqual(['A', 'B'], c.sort('t1', 't2').collect())
        self.assertEqual(['A', 'B'], c.sort('t2', 't1').collect())


class SelectionRequestTestCase(unittest.TestCase):
    def assertSelects(self, expected, **kwargs):
        got = catalogers().apply(tagged.SelectionRequest(**kwargs))
        self.assertEqual(expected, got.collect())

    def test_override_default_i(self):
        self.assertSelects(
            ['js-1', 'js-3', 'jv-1', 'jv-2', 'py-1', 'py-3', 'py-4'],
            base=['i'])

    def test_override_default_i_js(self):
        self.assertSelects(
            ['js-1', 'js-2', 'js-3', 'jv-1', 'jv-2', 'py-1', 'py-3',
             'py-4'],
            base=['i', 'js'])

    def test_add_restores_items_outside_base(self):
        self.assertSelects(
            ['js-1', 'js-3', 'jv-1', 'jv-2', 'py-1', 'py-3', 'py-4',
             'js-2'],
            base=['i'], add=['js'])

    def test_add_by_name(self):
        self.assertSelects(
            ['js-1', 'js-3', 'jv-1', 'jv-2', 'py-1', 'py-3', 'py-4',
             'sc-1'],
            base=['i'], add=['sc-1'])

    def test_remove_by_name(self):
        self.assertSelects(
            ['js-1', 'js-3', 'jv-1', 'jv-2', 'py-3', 'py-4'],
            base=['i'], remove=['py-1'])

    def test_select_narrows_base(self):
        self.assertSelects(['js-1', 'js-3'], base=['i'], select=['js'])

    def test_select_multiple_narrows_base(self):
        self.assertSelects(
            ['js-2', 'js-3', 'py-1', 'py-2', 'py-3'],
            base=['d'], select=['py', 'js'])
        self.assertSelects(
            ['js-1', 'js-3', 'py-1', 'py-3', 'py-4'],
            base=['i'], select=['js', 'py'])

    def test_remove_then_add(self):
        self.assertSelects(
            ['js-1', 'js-3', 'jv-1', 'jv-2', 'py-3', 'py-4', 'js-2',
             'sc-1'],
            base=['i'], add=['sc-1', 'js-2'], remove=['py-1', 'py-2'])

    def test_add_wins_over_remove(self):
        self.assertSelects(
            ['js-1', 'js-3', 'jv-1', 'jv-2', 'py-3', 'py-4', 'py-1'],
            base=['i'], remove=['py-1'], add=['py-1'])

    def test_scenario(self):
        c = tagged.TaggedCollection([
            tagged.new('js-1', 'i', 'js'),
            tagged.new('js-2', 'd', 'js'),
            tagged.new('jv-1', 'i', 'd', 'jv'),
            tagged.new('py-1', 'i', 'd', 'py'),
        ])
        got = c.select('i')
        self.assertEqual(['js-1', 'jv-1', 'py-1'], got.collect())
        got = got.remove('py')
        got = got.join(*c.select('d').remove('i'))
        self.assertEqual(['js-1', 'jv-1', 'js-2'], got.collect())

    def test_omitted_fields_select_everything(self):
        self.assertEqual(catalogers().collect(),
                         catalogers().apply(
                             tagged.SelectionRequest()).collect())

    def test_explicitly_empty_base_selects_nothing(self):
        self.assertSelects([], base=[])

    def test_explicitly_empty_select_selects_nothing(self):
        self.assertSelects([], base=['i'], select=[])

    def test_explicitly_empty_add_adds_nothing(self):
        self.assertSelects(['sc-1'], base=['sc-1'], add=[])
