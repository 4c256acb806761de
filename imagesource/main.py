import click
import json
import logging
from shakenfist_utilities import logs
import sys

from imagesource import config
from imagesource import detect
from imagesource import tagged


LOG = logs.setup_console(__name__)


@click.group()
@click.option('--verbose', is_flag=True)
@click.option('--platform', default=None,
              help='Platform to select, for example linux/arm64/v8')
@click.option('--username', default=None, envvar='IMAGESOURCE_USERNAME',
              help='Username for registry authentication')
@click.option('--password', default=None, envvar='IMAGESOURCE_PASSWORD',
              help='Password for registry authentication')
@click.option('--insecure-skip-tls-verify', is_flag=True, default=False,
              help='Do not verify registry TLS certificates')
@click.option('--insecure-use-http', is_flag=True, default=False,
              help='Use HTTP instead of HTTPS for registry connections')
@click.pass_context
def cli(ctx, verbose=None, platform=None, username=None, password=None,
        insecure_skip_tls_verify=None, insecure_use_http=None):
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
        LOG.setLevel(logging.DEBUG)
        logging.getLogger('imagesource').setLevel(logging.DEBUG)

    if not ctx.obj:
        ctx.obj = {}
    ctx.obj['PLATFORM'] = platform
    ctx.obj['USERNAME'] = username
    ctx.obj['PASSWORD'] = password
    ctx.obj['INSECURE_SKIP_TLS_VERIFY'] = insecure_skip_tls_verify
    ctx.obj['INSECURE_USE_HTTP'] = insecure_use_http


def selection_options(func):
    """The options narrowing which providers are used."""
    for name, help_text in reversed([
            ('base', 'Start from the providers with this tag'),
            ('select', 'Keep only providers with this tag'),
            ('remove', 'Drop providers with this tag'),
            ('add', 'Add back providers with this tag')]):
        func = click.option('--%s' % name, multiple=True,
                            help='%s (can be repeated)' % help_text)(func)
    return func


def _selection_request(base, select, remove, add):
    # An option which was not given at all leaves the providers alone
    return tagged.SelectionRequest(base=list(base) or None,
                                   select=list(select) or None,
                                   remove=list(remove) or None,
                                   add=list(add) or None)


def _options(ctx):
    options = []
    if ctx.obj['PLATFORM']:
        options.append(detect.with_platform(ctx.obj['PLATFORM']))
    if ctx.obj['INSECURE_SKIP_TLS_VERIFY']:
        options.append(detect.with_insecure_skip_tls_verify())
    if ctx.obj['INSECURE_USE_HTTP']:
        options.append(detect.with_insecure_allow_http())
    if ctx.obj['USERNAME']:
        options.append(detect.with_credentials(config.RegistryCredentials(
            None, username=ctx.obj['USERNAME'],
            password=ctx.obj['PASSWORD'])))
    return options


@click.command('providers')
@selection_options
@click.pass_context
def providers_cmd(ctx, base, select, remove, add):
    """List the image providers detection would try, in order.

    \b
    Examples:
      imagesource providers
      imagesource providers --select file
      imagesource providers --select pull --remove docker --add oci-dir
    """
    request = _selection_request(base, select, remove, add)
    for item in detect.select_providers(request):
        click.echo('%-16s %s' % (item.value.name, ','.join(item.tags[1:])))


cli.add_command(providers_cmd)


@click.command('detect')
@click.argument('user_input')
@click.option('--from', 'source', default=None,
              help='Only use providers with this name or tag')
@selection_options
@click.pass_context
def detect_cmd(ctx, user_input, source, base, select, remove, add):
    """Find an image and print its metadata as JSON.

    USER_INPUT may be a path to a docker save tarball, an OCI archive or an
    OCI layout directory, or an image reference held by a local daemon or
    a registry.

    \b
    Examples:
      imagesource detect ./busybox.tar
      imagesource detect --from registry busybox:latest
      imagesource --platform linux/arm64 detect --select pull alpine:3
    """
    request = _selection_request(base, select, remove, add)
    try:
        options = _options(ctx)
        if source:
            if any(request):
                raise click.UsageError(
                    '--from can not be combined with provider selection')
            result = detect.get_image_from_source(user_input, source,
                                                  *options)
        else:
            result = detect.get_image_from_selection(user_input, request,
                                                     *options)

    except (detect.DetectionError, detect.OptionError) as e:
        click.echo('Error: %s' % e, err=True)
        sys.exit(1)

    img = result.image
    try:
        for e in result.errors:
            LOG.warning('%s' % e)

        out = {'source': img.source, 'reference': img.reference}
        if img.metadata is not None:
            out.update(img.metadata.to_dict())
        click.echo(json.dumps(out, indent=4, sort_keys=True))
    finally:
        img.cleanup()


cli.add_command(detect_cmd)
