"""Image providers, and the registry of all of them.

A provider is a named callable provide(context, user_input, config) which
tries to turn a user supplied string into an image.Image. It returns the
image on success, returns None if the input is not something it handles,
and raises if it tried and failed. Providers are held in a
TaggedCollection, tagged with their own name and their capabilities, so
that callers can narrow the set of providers tried with a
SelectionRequest.
"""

from collections import namedtuple
import logging
import os
import stat
import tarfile

import requests

from imagesource import constants
from imagesource import containerd
from imagesource import daemon
from imagesource import image
from imagesource.inputs import ocilayout as input_ocilayout
from imagesource.inputs import sif as input_sif
from imagesource.inputs import tarfile as input_tarfile
from imagesource import layout
from imagesource import platforms
from imagesource import progress
from imagesource import reference
from imagesource import registry
from imagesource import resolver
from imagesource import tagged
from imagesource import util


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)

DAEMON_PING_TIMEOUT = 10


class ProviderError(Exception):
    """Raised when a provider tried an input and could not use it."""
    pass


class Provider(namedtuple('Provider', ['name', 'provide'])):
    __slots__ = ()

    def __str__(self):
        return self.name


def provide(name, provide_func, *tags):
    """Name and tag a provider function, ready for the provider registry."""
    return tagged.new(Provider(name, provide_func), name, *tags)


def same_provider(a, b):
    return a.name == b.name


# Helpers shared by providers

def ensure_registry_reference(user_input):
    """Check the input is an image reference, raising if it is not.

    Only the minimum of the reference grammar is checked. A registry host
    is not required, as a daemon may hold images under bare names.
    """
    return reference.parse_reference(user_input)


def detect_local_file(source, user_input, config):
    """Find a local file or directory named by the input.

    Returns:
        Tuple of (path, is_directory).

    Raises:
        ProviderError: If a platform was requested (file sources hold
            exactly one platform and can not select one), or the path
            does not exist.
    """
    if config.platform is not None:
        raise ProviderError(
            'specified platform=%r however image provider=%r does not '
            'support selecting platform' % (str(config.platform), source))

    path = os.path.expanduser(user_input)
    try:
        st = os.stat(path)
    except OSError as e:
        raise ProviderError('unable to find %s input %s: %s'
                            % (source, path, e))

    return path, stat.S_ISDIR(st.st_mode)


def detect_tar_entry(archive, entry):
    """Check a tarball contains a top level entry, raising if it does not."""
    try:
        with tarfile.open(archive, 'r') as tf:
            names = set(tf.getnames())
    except (tarfile.TarError, OSError) as e:
        raise ProviderError('unable to read tarball %s: %s' % (archive, e))

    if entry not in names and './%s' % entry not in names:
        raise ProviderError('%s does not contain %s' % (archive, entry))


def default_platform_if_none(config):
    """Return a config with the host platform if none was requested.

    The caller's config is never modified, a copy is returned instead.
    """
    if config.platform is not None:
        return config
    config = config.copy()
    config.platform = platforms.host()
    LOG.debug('No platform requested, defaulting to %s' % (config.platform,))
    return config


def with_metadata(platform, user_metadata, ref):
    """The metadata updates for an image pulled via a reference.

    Platform details come first, then the reference as a tag (with any
    digest removed), then the caller's own updates, which therefore win.
    """
    metadata = []
    if platform is not None:
        metadata.append(image.with_architecture(platform.architecture,
                                                platform.variant))
        metadata.append(image.with_os(platform.os))

    if ':' in ref:
        metadata.append(image.with_tags(ref.split('@')[0]))

    metadata.extend(user_metadata or [])
    return metadata


# File providers

def docker_archive_provider(context, user_input, config):
    path, is_dir = detect_local_file(constants.DOCKER_ARCHIVE_SOURCE,
                                     user_input, config)
    if is_dir:
        raise ProviderError('not a Docker archive file: %s is a directory'
                            % path)
    detect_tar_entry(path, constants.DOCKER_MANIFEST_FILE)

    return image.Image(input_tarfile.DockerArchive(path),
                       constants.DOCKER_ARCHIVE_SOURCE, reference=path,
                       additional_metadata=config.additional_metadata,
                       context=context)


def oci_archive_provider(context, user_input, config):
    path, is_dir = detect_local_file(constants.OCI_ARCHIVE_SOURCE,
                                     user_input, config)
    if is_dir:
        raise ProviderError('not an OCI archive file: %s is a directory'
                            % path)
    detect_tar_entry(path, constants.OCI_LAYOUT_FILE)

    layout_dir = input_ocilayout.extract_layout(
        path, context.new_directory(constants.OCI_ARCHIVE_SOURCE))
    reader = input_ocilayout.OCILayout(layout_dir, temp_dir=layout_dir)
    return image.Image(reader,
                       constants.OCI_ARCHIVE_SOURCE, reference=path,
                       additional_metadata=config.additional_metadata,
                       context=context)


def oci_directory_provider(context, user_input, config):
    path, is_dir = detect_local_file(constants.OCI_DIRECTORY_SOURCE,
                                     user_input, config)
    if not is_dir:
        raise ProviderError('not an OCI directory: %s is not a directory'
                            % path)
    if not os.path.exists(os.path.join(path, constants.OCI_LAYOUT_FILE)):
        raise ProviderError('not an OCI directory: %s has no %s file'
                            % (path, constants.OCI_LAYOUT_FILE))

    temp_dir = context.new_directory(constants.OCI_DIRECTORY_SOURCE)
    return image.Image(input_ocilayout.OCILayout(path, temp_dir=temp_dir),
                       constants.OCI_DIRECTORY_SOURCE, reference=path,
                       additional_metadata=config.additional_metadata,
                       context=context)


def singularity_provider(context, user_input, config):
    path, is_dir = detect_local_file(constants.SINGULARITY_SOURCE,
                                     user_input, config)
    if is_dir:
        raise ProviderError('not a Singularity archive: %s is a directory'
                            % path)
    if not input_sif.is_sif(path):
        raise ProviderError('not a Singularity archive: %s has no SIF '
                            'header' % path)
    try:
        input_sif.load_container(path)
    except (input_sif.SIFError, OSError) as e:
        raise ProviderError('unable to read Singularity archive %s: %s'
                            % (path, e))

    temp_dir = context.new_directory(constants.SINGULARITY_SOURCE)
    return image.Image(input_sif.SIFImage(path, temp_dir=temp_dir),
                       constants.SINGULARITY_SOURCE, reference=path,
                       additional_metadata=config.additional_metadata,
                       context=context)


# Daemon providers

def _export_image(client, ref, size, tar_path):
    """Save an image from a daemon to a docker archive at tar_path."""
    tracked = progress.track_copy_progress(ref, size)
    try:
        tracked.stage.current = 'requesting image from %s' % client.name
        with open(tar_path, 'wb') as f:
            for chunk in client.export(ref):
                f.write(chunk)
                tracked.copied.add(len(chunk))
        tracked.stage.current = 'saved image from %s' % client.name
    finally:
        # Observers must always see the copy finish
        tracked.set_completed()
    return tar_path


def _daemon_provider(source, socket_path, context, user_input, config):
    ensure_registry_reference(user_input)

    if not os.path.exists(socket_path):
        raise ProviderError('unable to find %s daemon socket at %s'
                            % (source, socket_path))

    client = daemon.DaemonClient(socket_path, name=source, context=context)
    try:
        try:
            api_version = client.ping(timeout=DAEMON_PING_TIMEOUT)
        except (requests.exceptions.RequestException,
                util.APIException) as e:
            raise ProviderError('unable to get %s API response: %s'
                                % (source, e))
        if not api_version:
            raise ProviderError('unable to get %s API response: no API '
                                'version reported' % source)
        LOG.debug('%s daemon at %s speaks API version %s'
                  % (source, socket_path, api_version))

        store = daemon.DaemonStore(client)
        resolution = resolver.PlatformResolver(
            store, config.platform, context).pull_if_missing(user_input)

        inspected = store.inspect(user_input)
        tar_path = os.path.join(
            context.new_directory('%s-daemon-image' % source), 'image.tar')
        _export_image(client, user_input, inspected.get('Size'),
                      tar_path)
    finally:
        client.close()

    return image.Image(
        input_tarfile.DockerArchive(tar_path,
                                   temp_dir=os.path.dirname(tar_path)),
        source, reference=user_input,
        additional_metadata=with_metadata(
            resolution.platform, config.additional_metadata, user_input),
        context=context)


def docker_daemon_provider(context, user_input, config):
    return _daemon_provider(constants.DOCKER_DAEMON_SOURCE,
                            daemon.docker_socket_path(), context, user_input,
                            config)


def podman_daemon_provider(context, user_input, config):
    return _daemon_provider(constants.PODMAN_DAEMON_SOURCE,
                            daemon.podman_socket_path(), context, user_input,
                            config)


def _save_containerd_image(client, ref, size, tar_path, platform):
    """Have containerd write one platform of an image to tar_path.

    ctr writes the archive itself, so the copy is only measured once the
    export has finished.
    """
    tracked = progress.track_copy_progress(ref, size)
    try:
        tracked.stage.current = 'requesting image from %s' % client.name
        client.export(ref, tar_path, platform)
        written = os.path.getsize(tar_path)
        tracked.copied.set_total(written)
        tracked.copied.add(written)
        tracked.stage.current = 'saved image from %s' % client.name
    finally:
        tracked.set_completed()
    return tar_path


def containerd_daemon_provider(context, user_input, config):
    parsed = ensure_registry_reference(user_input)

    if not containerd.ctr_available():
        raise ProviderError('unable to find the containerd client %s'
                            % containerd.CTR)

    client = containerd.ContainerdClient(registry_options=config.registry,
                                         context=context)
    try:
        api_version = client.version()
    except containerd.ContainerdError as e:
        raise ProviderError('unable to get containerd API response: %s' % e)
    if not api_version:
        raise ProviderError('unable to get containerd API response: no '
                            'version reported')
    LOG.debug('containerd at %s is version %s'
              % (client.address, api_version))

    # containerd stores images under fully qualified names
    if not parsed.tag and not parsed.digest:
        parsed = parsed._replace(tag=reference.DEFAULT_TAG)
    ref = reference.check_registry_host_missing(str(parsed))

    store = containerd.ContainerdStore(client)
    try:
        resolution = resolver.PlatformResolver(
            store, config.platform, context).pull_if_missing(ref)
    except containerd.ContainerdError as e:
        raise ProviderError('unable to pull %s with containerd: %s'
                            % (ref, e))

    # ctr pulls the host's platform when none is requested
    export_platform = (config.platform or resolution.platform or
                       platforms.host())
    work_dir = context.new_directory(
        '%s-daemon-image' % constants.CONTAINERD_DAEMON_SOURCE)
    tar_path = os.path.join(work_dir, 'image.tar')
    entry = client.list_image(ref) or {}
    try:
        _save_containerd_image(client, ref, entry.get('size'), tar_path,
                               export_platform)
    except containerd.ContainerdError as e:
        raise ProviderError('unable to export %s from containerd: %s'
                            % (ref, e))

    return image.Image(
        input_tarfile.DockerArchive(tar_path, temp_dir=work_dir),
        constants.CONTAINERD_DAEMON_SOURCE, reference=user_input,
        additional_metadata=with_metadata(
            resolution.platform, config.additional_metadata, ref),
        context=context)


# Registry provider

def registry_provider(context, user_input, config):
    ensure_registry_reference(user_input)
    config = default_platform_if_none(config)

    ref = reference.parse_reference(user_input).with_defaults()
    client = registry.RegistryClient(ref, config.registry, context=context)
    context.register_cleanup(client.close)

    layout_dir = context.new_directory(constants.OCI_REGISTRY_SOURCE)
    store = layout.LayoutStore(layout_dir, remote=client, context=context)
    store.initialize()

    resolution = resolver.PlatformResolver(
        store, config.platform, context).pull_if_missing(str(ref))

    reader = input_ocilayout.OCILayout(
        layout_dir, descriptor=resolution.descriptor,
        reference=str(ref), temp_dir=layout_dir)
    return image.Image(
        reader, constants.OCI_REGISTRY_SOURCE, reference=user_input,
        additional_metadata=with_metadata(
            resolution.platform, config.additional_metadata, user_input),
        context=context)


def image_providers():
    """Every provider, in the order detection tries them."""
    return tagged.TaggedCollection([
        # file providers
        provide(constants.DOCKER_ARCHIVE_SOURCE, docker_archive_provider,
                constants.TAG_FILE),
        provide(constants.OCI_ARCHIVE_SOURCE, oci_archive_provider,
                constants.TAG_FILE),
        provide(constants.OCI_DIRECTORY_SOURCE, oci_directory_provider,
                constants.TAG_FILE),
        provide(constants.SINGULARITY_SOURCE, singularity_provider,
                constants.TAG_FILE),

        # daemon providers
        provide(constants.DOCKER_DAEMON_SOURCE, docker_daemon_provider,
                constants.TAG_DAEMON, constants.TAG_PULL),
        provide(constants.PODMAN_DAEMON_SOURCE, podman_daemon_provider,
                constants.TAG_DAEMON, constants.TAG_PULL),
        provide(constants.CONTAINERD_DAEMON_SOURCE,
                containerd_daemon_provider,
                constants.TAG_DAEMON, constants.TAG_PULL),

        # registry providers
        provide(constants.OCI_REGISTRY_SOURCE, registry_provider,
                constants.TAG_REGISTRY, constants.TAG_PULL),
    ], equals=same_provider)
