import re
from urllib import parse

from stream_proxy.utils.http_utils import encode_stream_proxy_url

PLAYLIST_HEADER = "#EXTM3U"
URI_ATTRIBUTE_PATTERN = re.compile(r'URI="([^"]+)"')


class RewriteError(Exception):
    """Raised when a body labelled as a playlist cannot be processed as one."""


class M3U8Processor:
    def __init__(self, proxy_base_url: str, rewrite_key_uris: bool = False):
        """
        Initializes the M3U8Processor.

        Args:
            proxy_base_url (str): Base URL of the proxy that rewritten URIs point to.
            rewrite_key_uris (bool, optional): Also proxy URI="..." attributes inside tags. Defaults to False.
        """
        self.proxy_base_url = proxy_base_url
        self.rewrite_key_uris = rewrite_key_uris

    @staticmethod
    def decode(content: bytes) -> str:
        """
        Decode a playlist body, rejecting anything that is not a text playlist.

        Raises:
            RewriteError: If the body is not UTF-8 text starting with #EXTM3U.
        """
        try:
            text = content.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise RewriteError(f"Playlist is not valid UTF-8: {e}")
        if "\x00" in text:
            raise RewriteError("Playlist contains binary data")
        if not text.lstrip().startswith(PLAYLIST_HEADER):
            raise RewriteError(f"Playlist does not start with {PLAYLIST_HEADER}")
        return text

    def process_m3u8(self, content: str, base_url: str) -> str:
        """
        Processes the m3u8 content, routing every URI line through the proxy.

        Args:
            content (str): The m3u8 content to process.
            base_url (str): The URL the playlist was fetched from, used to resolve relative URIs.

        Returns:
            str: The processed m3u8 content, with the same number of lines.
        """
        processed_lines = [self.process_line(line, base_url) for line in content.splitlines()]
        processed = "\n".join(processed_lines)
        if content.endswith(("\n", "\r")):
            processed += "\n"
        return processed

    def process_line(self, line: str, base_url: str) -> str:
        if line.lstrip().startswith("#"):
            if self.rewrite_key_uris and "URI=" in line:
                return self.process_key_line(line, base_url)
            return line
        if not line.strip():
            return line
        return self.proxy_url(line.strip(), base_url)

    def process_key_line(self, line: str, base_url: str) -> str:
        """
        Proxies the URI attribute of a tag line such as #EXT-X-KEY or #EXT-X-MAP.
        """
        uri_match = URI_ATTRIBUTE_PATTERN.search(line)
        if uri_match:
            original_uri = uri_match.group(1)
            if original_uri.startswith(("data:", "skd:")):
                return line
            new_uri = self.proxy_url(original_uri, base_url)
            line = line.replace(f'URI="{original_uri}"', f'URI="{new_uri}"')
        return line

    def proxy_url(self, url: str, base_url: str) -> str:
        """
        Resolve ``url`` against the playlist location and encode it as a proxy URL.

        Args:
            url (str): Absolute or relative URI from the playlist.
            base_url (str): The playlist URL.

        Returns:
            str: The proxied URL.
        """
        full_url = url if parse.urlsplit(url).scheme else parse.urljoin(base_url, url)
        return encode_stream_proxy_url(self.proxy_base_url, full_url)

    def rewrite(self, content: bytes, base_url: str) -> str:
        """Decode and process a raw playlist body."""
        return self.process_m3u8(self.decode(content), base_url)
