"""Format and path helpers for Coconut jobs."""

import hashlib
import posixpath
import re
from typing import Optional
from urllib.parse import urlparse

from coconut_jobs.core.validators import ConfigValidationError


CONTAINER_ALIASES = {
    "divx": "avi",
    "xvid": "avi",
    "wmv": "asf",
    "flash": "flv",
    "theora": "ogv",
    "jpeg": "jpg",
}

VIDEO_OUTPUT_CONTAINERS = (
    "mp4", "webm", "avi", "divx", "xvid", "asf", "wmv", "mpegts", "mov",
    "mkv", "3gp", "ogv", "theora", "flv", "flash",
)
AUDIO_OUTPUT_CONTAINERS = ("mp3", "ogg")
IMAGE_OUTPUT_CONTAINERS = ("jpg", "jpeg", "png", "gif")

SEQUENTIAL_PLACEHOLDER_PATTERN = re.compile(
    r"%(\d+\$)?(-|\+| |0|')?(\d+)?(\.\d+)?(%|[b-h]|[F-H]|o|s|u|x|X)"
)
SEQUENCE_OPTION_PATTERN = re.compile(r"(?:^|[:,])\s*(number|every|offsets)=")
PATH_EXPRESSION_PATTERN = re.compile(r"(?<!\{)\{([a-zA-Z0-9_]+)\}(?!\})")
PATH_PRIVATISATION_PATTERN = re.compile(r"^(\.{0,2}/)?([^_])")
PATH_EXTRA_SEPARATORS_PATTERN = re.compile(r"/+")


def format_container(format: str) -> str:
    """Container part of a format string (``mp4`` for ``mp4:720p``).

    Raises:
        ConfigValidationError: If the format has no container
    """
    container = format.split(":", 1)[0].strip().lower()
    if not container:
        raise ConfigValidationError(
            f'Could not determine file container for format "{format}"',
            attribute="format",
        )
    return container


def format_extension(format: str) -> str:
    """File extension of outputs encoded with ``format``."""
    container = format_container(format)
    return CONTAINER_ALIASES.get(container, container)


def container_type(container: str) -> Optional[str]:
    """Media type (video, audio or image) of an output container."""
    if container in VIDEO_OUTPUT_CONTAINERS:
        return "video"
    if container in AUDIO_OUTPUT_CONTAINERS:
        return "audio"
    if container in IMAGE_OUTPUT_CONTAINERS:
        return "image"
    return None


def is_sequence_format(format: str) -> bool:
    """Whether the format produces several image files."""
    return (
        container_type(format_container(format)) == "image"
        and SEQUENCE_OPTION_PATTERN.search(format) is not None
    )


def format_as_key(format: str) -> str:
    """Path-friendly version of a format string."""
    return format.replace(":", "-").replace("=", "_").replace(",", "__")


def privatise_path(path: str) -> str:
    """Prefix the file path with ``_`` so volume indexers skip it."""
    return PATH_PRIVATISATION_PATTERN.sub(r"\1_\2", path, count=1)


def normalize_path(path: str) -> str:
    """Collapse repeated separators and trim leading/trailing slashes."""
    return PATH_EXTRA_SEPARATORS_PATTERN.sub("/", path).strip("/")


def sequence_path(path: str) -> str:
    """Add a ``-%02d`` sequence placeholder unless the path has one."""
    if SEQUENTIAL_PLACEHOLDER_PATTERN.search(path):
        return path
    dirname, basename = posixpath.split(path)
    filename, ext = posixpath.splitext(basename)
    sequenced = f"{filename}-%02d{ext}"
    return f"{dirname}/{sequenced}" if dirname else sequenced


def url_hash(url: str) -> str:
    """MD5 hash identifying an input URL."""
    return hashlib.md5(url.encode("utf-8")).hexdigest()


def format_output_path(path_format: str, input_url: str, format: str) -> str:
    """Resolve an output path format for an input and output format.

    Supported tokens: ``{path}`` (input URL folder), ``{filename}`` (input
    file name without extension), ``{hash}``/``{shortHash}`` (input URL
    hash), ``{key}`` (path-friendly format) and ``{ext}``.
    """
    input_path = urlparse(input_url).path
    folder, basename = posixpath.split(input_path)
    hashed = url_hash(input_url)

    variables = {
        "path": folder,
        "filename": posixpath.splitext(basename)[0],
        "hash": hashed,
        "shortHash": hashed[:7],
        "key": format_as_key(format),
        "ext": format_extension(format),
    }

    path = PATH_EXPRESSION_PATTERN.sub(
        lambda match: variables.get(match.group(1), match.group(0)),
        path_format,
    )
    path = normalize_path(path)
    if is_sequence_format(format):
        path = sequence_path(path)
    return path
