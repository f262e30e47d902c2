"""Stream endpoint identity and URL construction."""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import quote

from nodepulse.stream.codec import MetricCategory, category_for


@dataclass(frozen=True, slots=True)
class EndpointKey:
    """Identifies one physical connection: ``(host, topic, node_id)``."""

    host: str
    topic: str
    node_id: str

    @property
    def category(self) -> MetricCategory:
        return category_for(self.topic)

    def url(self, credential: str, *, scheme: str = "ws", path_prefix: str = "performance") -> str:
        """Build ``scheme://host/<prefix>/ws/<topic>/<node>?token=<credential>``.

        The credential travels as a query parameter because browser-style
        socket handshakes cannot carry an ``Authorization`` header.
        """
        prefix = path_prefix.strip("/")
        path = f"/{prefix}/ws/{self.topic}/{quote(self.node_id, safe='')}"
        if not prefix:
            path = f"/ws/{self.topic}/{quote(self.node_id, safe='')}"
        return f"{scheme}://{self.host}{path}?token={quote(credential, safe='')}"

    def redacted_url(self, *, scheme: str = "ws", path_prefix: str = "performance") -> str:
        """The URL with the credential masked, for log lines."""
        return self.url("***", scheme=scheme, path_prefix=path_prefix).replace("%2A", "*")

    def __str__(self) -> str:
        return f"{self.topic}/{self.node_id}@{self.host}"
