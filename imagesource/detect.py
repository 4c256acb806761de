"""Detecting where an image comes from, and fetching it from there.

Given only a user supplied string, detection tries each candidate provider
in turn until one of them produces an image. Providers which fail do not
stop detection; their errors are collected and handed back alongside the
image which was eventually found, or raised together in a DetectionError
if no provider found anything.
"""

from collections import namedtuple
import logging
import warnings

from imagesource import config
from imagesource import platforms
from imagesource import providers as provider_registry
from imagesource import runtime


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


class DetectionError(Exception):
    """Raised when no provider could produce an image.

    errors holds what every provider tried raised, in the order tried.
    """

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = list(errors or [])

    def __str__(self):
        if not self.errors:
            return super().__str__()
        return '%s, errors: %s' % (super().__str__(),
                                   '; '.join(str(e) for e in self.errors))


class OptionError(Exception):
    pass


DetectionResult = namedtuple('DetectionResult', ['image', 'errors'])
DetectionResult.__doc__ = """The image detection found.

errors lists the failures of providers tried before the one which found
the image, plus any failure reading the image itself. An image with errors
is still usable, the errors are advisory.
"""


class DetectionConfig:
    def __init__(self, provider_config=None, providers=None):
        """What detection should try, and with what configuration.

        Args:
            provider_config: config.ProviderConfig handed to each provider.
            providers: Ordered list of providers.Provider to try. Empty or
                None means every registered provider.
        """
        self.provider_config = provider_config or config.ProviderConfig()
        self.providers = list(providers or [])


def detect_image(context, user_input, config=None):
    """Try providers in order until one produces an image.

    The image is read exactly once before it is returned. A failure to read
    it is recorded with the other errors, the image is still returned.

    Raises:
        DetectionError: If no provider produced an image.
        runtime.CancelledError: If the context was cancelled. This stops
            detection immediately and is not treated as a provider failure.
    """
    if config is None:
        config = DetectionConfig()
    LOG.debug('Detecting image source for %s' % user_input)

    candidates = config.providers
    if not candidates:
        candidates = provider_registry.image_providers().collect()

    errors = []
    for provider in candidates:
        context.check_cancelled()
        LOG.debug('Trying provider %s for %s' % (provider, user_input))
        try:
            img = provider.provide(context, user_input,
                                   config.provider_config)
        except runtime.CancelledError:
            raise
        except Exception as e:
            LOG.debug('Provider %s failed for %s: %s'
                      % (provider, user_input, e))
            errors.append(e)
            continue

        if img is None:
            LOG.debug('Provider %s does not handle %s'
                      % (provider, user_input))
            continue

        LOG.info('Found %s via provider %s' % (user_input, provider))
        try:
            img.read()
        except runtime.CancelledError:
            raise
        except Exception as e:
            LOG.warning('Could not read image %s: %s' % (user_input, e))
            errors.append(DetectionError('could not read image', [e]))
        return DetectionResult(img, errors)

    raise DetectionError("unable to detect input for '%s'" % user_input,
                         errors)


# Options

def with_registry_options(options):
    """Use a copy of options, which later options then adjust."""
    def option(cfg):
        cfg.registry = options.copy()
    return option


def with_insecure_skip_tls_verify():
    def option(cfg):
        cfg.registry.insecure_skip_tls_verify = True
    return option


def with_insecure_allow_http():
    def option(cfg):
        cfg.registry.insecure_use_http = True
    return option


def with_credentials(*credentials):
    def option(cfg):
        cfg.registry.credentials.extend(credentials)
    return option


def with_additional_metadata(*metadata):
    def option(cfg):
        cfg.additional_metadata.extend(metadata)
    return option


def with_platform(platform):
    """Request a platform, given as a string like 'linux/arm64/v8'."""
    def option(cfg):
        if isinstance(platform, platforms.Platform):
            cfg.platform = platform
        else:
            cfg.platform = platforms.parse(platform)
    return option


def apply_options(cfg, *options):
    for option in options:
        if option is None:
            continue
        try:
            option(cfg)
        except Exception as e:
            raise OptionError('unable to parse option: %s' % e)
    return cfg


# Entry points

def select_providers(request, providers=None):
    """Narrow the providers, by default all of them, with a request."""
    if providers is None:
        providers = provider_registry.image_providers()
    return providers.apply(request)


def _detect(user_input, candidates, options, context):
    cfg = apply_options(config.ProviderConfig(), *options)

    owns_context = context is None
    if owns_context:
        context = runtime.new_execution_context()

    try:
        result = detect_image(context, user_input,
                              DetectionConfig(cfg, candidates.collect()))
    except Exception:
        if owns_context:
            context.cleanup()
        raise

    if owns_context:
        # Nobody else can release what the image holds
        result.image.owns_context = True
    return result


def get_image(user_input, *options, context=None):
    """Fetch an image, working out which provider to use.

    If no context is given, one is created and the returned image owns it:
    call image.cleanup() once done with the image.
    """
    return get_image_from_source(user_input, '', *options, context=context)


def get_image_from_source(user_input, source, *options, context=None):
    """Fetch an image using only the providers tagged with source."""
    LOG.debug('Image source=%r location=%r' % (source, user_input))

    candidates = provider_registry.image_providers()
    source = (source or '').strip().lower()
    if source:
        candidates = candidates.select(source)
    if not len(candidates):
        raise DetectionError(
            "unable to find image providers matching: '%s'" % source)

    return _detect(user_input, candidates, options, context)


def get_image_from_selection(user_input, request, *options, context=None):
    """Fetch an image using the providers a SelectionRequest selects."""
    candidates = select_providers(request)
    if not len(candidates):
        raise DetectionError('no image providers selected by %r'
                             % (request,))
    return _detect(user_input, candidates, options, context)


# Deprecated scheme handling. Prefer selecting providers explicitly, as a
# 'scheme:' prefix is ambiguous with paths and references which contain a
# colon.

SCHEME_SEPARATOR = ':'


def extract_provider_scheme(providers, user_input):
    """Split a 'scheme:' prefix naming a provider tag off the input.

    Returns:
        Tuple of (scheme, input). scheme is empty if the input has no
        prefix, or the prefix is not a known provider tag.
    """
    warnings.warn('scheme prefixes are deprecated, select providers '
                  'instead', DeprecationWarning, stacklevel=2)

    parts = user_input.split(SCHEME_SEPARATOR, 1)
    if len(parts) < 2:
        return '', user_input

    # This may be a source hint, or a split of a path or reference
    hint = parts[0].strip().lower()
    if not providers.has_tag(hint):
        return '', user_input
    return hint, parts[1]


def get_image_with_scheme(user_input, *options, context=None):
    """Fetch an image, honouring a 'scheme:' prefix naming a provider."""
    warnings.warn('get_image_with_scheme is deprecated, use '
                  'get_image_from_source instead', DeprecationWarning,
                  stacklevel=2)

    with warnings.catch_warnings():
        warnings.simplefilter('ignore', DeprecationWarning)
        scheme, user_input = extract_provider_scheme(
            provider_registry.image_providers(), user_input)

    if scheme:
        return get_image_from_source(user_input, scheme, *options,
                                     context=context)
    return get_image(user_input, *options, context=context)
