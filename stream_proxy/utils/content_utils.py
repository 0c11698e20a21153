from enum import Enum
from typing import Optional
from urllib.parse import urlsplit

SEGMENT_PATH_MARKERS = ("/hlsr/",)


class ContentKind(str, Enum):
    MANIFEST_HLS = "manifest-hls"
    MANIFEST_DASH = "manifest-dash"
    SEGMENT_TS = "segment-ts"
    SEGMENT_FMP4 = "segment-fmp4"
    OTHER = "other"

    @property
    def is_manifest(self) -> bool:
        return self in (ContentKind.MANIFEST_HLS, ContentKind.MANIFEST_DASH)


CONTENT_TYPES = {
    ContentKind.MANIFEST_HLS: "application/vnd.apple.mpegurl",
    ContentKind.MANIFEST_DASH: "application/dash+xml",
    ContentKind.SEGMENT_TS: "video/MP2T",
    ContentKind.SEGMENT_FMP4: "video/mp4",
}


def classify(url: str) -> ContentKind:
    """
    Determine the kind of media a URL points at from its path.

    Args:
        url (str): The upstream URL.

    Returns:
        ContentKind: The detected kind, ``ContentKind.OTHER`` when nothing matches.
    """
    path = urlsplit(url).path.lower()
    if path.endswith(".m3u8"):
        return ContentKind.MANIFEST_HLS
    if path.endswith(".mpd"):
        return ContentKind.MANIFEST_DASH
    if path.endswith(".ts") or any(marker in path for marker in SEGMENT_PATH_MARKERS):
        return ContentKind.SEGMENT_TS
    if path.endswith(".m4s"):
        return ContentKind.SEGMENT_FMP4
    return ContentKind.OTHER


def content_type_for(kind: ContentKind) -> Optional[str]:
    """Return the forced Content-Type for a kind, or None to keep the upstream one."""
    return CONTENT_TYPES.get(kind)
