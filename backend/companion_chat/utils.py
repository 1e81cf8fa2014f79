import math
import re
from urllib.parse import urlparse

ATTACHMENT_SUFFIXES: dict[str, frozenset[str]] = {
    "image": frozenset({"jpg", "jpeg", "png", "gif", "webp", "svg"}),
    "video": frozenset({"mp4", "webm", "mov", "avi"}),
    "audio": frozenset({"mp3", "wav", "ogg"}),
    "document": frozenset({"pdf", "doc", "docx", "txt"}),
}

UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9.-]")


def classify_attachment(url: str) -> str:
    """Return the coarse media type of ``url`` judged by its file extension."""

    path = urlparse(url).path or url
    _, dot, suffix = path.rpartition(".")
    if not dot:
        return "file"
    suffix = suffix.lower()
    for attachment_type, suffixes in ATTACHMENT_SUFFIXES.items():
        if suffix in suffixes:
            return attachment_type
    return "file"


def attachment_file_name(url: str) -> str:
    return url.rsplit("/", 1)[-1] or "attachment"


def sanitize_file_name(name: str) -> str:
    return UNSAFE_FILENAME_CHARS.sub("_", name) or "upload"


def estimate_tokens(text: str) -> int:
    """Rough token estimate: one token per four characters."""

    return math.ceil(len(text) / 4)


def append_file_references(content: str, file_urls: list[str]) -> str:
    """Return ``content`` followed by one ``[Image N: url]`` line per file."""

    if not file_urls:
        return content
    listing = "\n".join(f"[Image {index}: {url}]" for index, url in enumerate(file_urls, start=1))
    return f"{content}\n\n{listing}" if content else listing


__all__ = [
    "append_file_references",
    "attachment_file_name",
    "classify_attachment",
    "estimate_tokens",
    "sanitize_file_name",
]
