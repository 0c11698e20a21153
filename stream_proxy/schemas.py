from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class GenericParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ProxyRequest(GenericParams):
    target_url: str = Field(..., description="The absolute upstream URL to fetch.")
    embedded_cookie: Optional[str] = Field(
        None, description="Cookie header value supplied through the URL (pipe suffix or Cookie query parameter)."
    )
    user_agent_override: Optional[str] = Field(
        None, description="User-Agent value supplied through the URL, sent upstream verbatim."
    )


class HostHeaderPolicy(BaseModel):
    """
    Extra upstream headers for hosts whose name contains ``host_pattern``.

    Header values may use the ``{origin}`` placeholder, which is replaced by the
    scheme, host and port of the target URL.
    """

    host_pattern: str = Field(..., description="Substring matched against the upstream hostname.")
    headers: Dict[str, str] = Field(default_factory=dict, description="Headers added to the upstream request.")
    timeout: Optional[float] = Field(None, description="Fetch deadline override in seconds for this host.")

    def matches(self, hostname: str) -> bool:
        return self.host_pattern.lower() in (hostname or "").lower()


class ErrorResponse(BaseModel):
    message: str
    error: Any = None
    url: Optional[str] = None
    details: Optional[Any] = None


class StreamingSource(BaseModel):
    name: Optional[str] = Field(None, description="Display name of the source.")
    url: str = Field(..., description="The upstream media URL.")
    type: Optional[str] = Field(None, description="Source type, e.g. hls or dash.")


class GenerateUrlsRequest(BaseModel):
    proxy_base_url: Optional[str] = Field(
        None, description="Base URL of this proxy. Defaults to the configured or requesting base URL."
    )
    streaming_sources: list[StreamingSource] = Field(
        ..., alias="streamingSources", description="Streaming sources whose URLs should be routed through the proxy."
    )

    model_config = ConfigDict(populate_by_name=True)
