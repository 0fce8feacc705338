"""External collaborators of the reconcilers.

The DNS provider, certificate authority and content pipeline are
integrations owned by other systems; only their contracts live here.
Two concrete collaborators ship with the package:

- :class:`HttpProber`: ``GET http://<address>/health`` through httpx
- :class:`DirectoryPublisher`: renders posts into a static directory tree

Collaborators are called from worker threads and must be thread-safe.
Everything that talks to the network takes an explicit timeout.

Tags:
    collaborators, protocols, httpx, publisher, health-probe, sitefleet

Doc-Types:
    api-reference
"""

from __future__ import annotations

import html
import os
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

import httpx

from sitefleet.logging import get_logger
from sitefleet.models import (
    CertificateResult,
    HealthStatus,
    NameserverStatus,
    Post,
    PostDraft,
    Server,
    Site,
)

logger = get_logger(__name__)


@runtime_checkable
class DnsProvider(Protocol):
    def check_nameservers(self, hostname: str) -> NameserverStatus:
        """Are the hostname's nameservers pointing at the fleet?"""
        ...


@runtime_checkable
class CertificateAuthority(Protocol):
    def issue_or_renew(self, hostname: str) -> CertificateResult:
        """Issue a certificate, or renew the existing one."""
        ...


@runtime_checkable
class Publisher(Protocol):
    def publish(self, post: Post, site: Site) -> None:
        """Make *post* live on *site*; raise on error.

        Must be idempotent: publishing the same post twice leaves one
        artifact.
        """
        ...


@runtime_checkable
class Prober(Protocol):
    def probe(self, server: Server, timeout: float) -> HealthStatus: ...


@runtime_checkable
class ContentSource(Protocol):
    def draft_post(self, site: Site, post_type: str) -> PostDraft: ...


@dataclass
class Collaborators:
    """Bundle returned by a ``module:factory`` collaborator factory."""

    dns: DnsProvider | None = None
    certificates: CertificateAuthority | None = None
    content: ContentSource | None = None
    publisher: Publisher | None = None
    prober: Prober | None = None


# ── Health probing ───────────────────────────────────────────────────────


class HttpProber:
    """Probe ``http://<address>/health``.

    Status mapping:
        2xx within ``degraded_after`` seconds  → healthy
        2xx slower, or any non-2xx status       → degraded
        transport error or timeout              → unreachable

    Example:
        >>> prober = HttpProber(degraded_after=1.0)
        >>> prober.probe(server, timeout=2.0)
        <HealthStatus.HEALTHY: 'healthy'>
    """

    def __init__(
        self,
        degraded_after: float = 1.0,
        path: str = "/health",
        client: httpx.Client | None = None,
    ) -> None:
        self.degraded_after = degraded_after
        self.path = path
        self._client = client or httpx.Client(follow_redirects=False)

    def url_for(self, server: Server) -> str:
        address = server.address
        if "://" not in address:
            address = f"http://{address}"
        return address.rstrip("/") + self.path

    def probe(self, server: Server, timeout: float) -> HealthStatus:
        url = self.url_for(server)
        started = time.monotonic()
        try:
            response = self._client.get(url, timeout=timeout)
        except httpx.TimeoutException:
            logger.warning("probe_timeout", server=server.name, url=url, timeout=timeout)
            return HealthStatus.UNREACHABLE
        except httpx.HTTPError as exc:
            logger.warning("probe_failed", server=server.name, url=url, error=str(exc))
            return HealthStatus.UNREACHABLE

        elapsed = time.monotonic() - started
        if response.is_success and elapsed <= self.degraded_after:
            return HealthStatus.HEALTHY
        logger.info(
            "probe_degraded",
            server=server.name,
            status_code=response.status_code,
            elapsed=round(elapsed, 3),
        )
        return HealthStatus.DEGRADED

    def close(self) -> None:
        self._client.close()


# ── Static publishing ────────────────────────────────────────────────────


_PAGE_TEMPLATE = """<!doctype html>
<html>
<head><meta charset="utf-8"><title>{title}</title></head>
<body>
<article class="post post-{post_type}">
<h1>{title}</h1>
{body}
</article>
</body>
</html>
"""


def render_post(post: Post) -> str:
    paragraphs = [p.strip() for p in post.body.split("\n\n") if p.strip()]
    body = "\n".join(f"<p>{html.escape(p)}</p>" for p in paragraphs)
    return _PAGE_TEMPLATE.format(
        title=html.escape(post.title),
        post_type=html.escape(post.post_type),
        body=body,
    )


class DirectoryPublisher:
    """Write each post to ``<root>/<site dir>/posts/<slug>.html``.

    The site directory is the site's hostname when ``hostname_for`` can
    resolve one, else its ``publish_target``, else ``site-<id>``. Files are
    written atomically and rewritten only when the content changes, so
    publishing twice leaves a single identical artifact.
    """

    def __init__(
        self,
        root: Path | str,
        hostname_for: Callable[[Site], str | None] | None = None,
    ) -> None:
        self.root = Path(root)
        self.hostname_for = hostname_for

    def path_for(self, post: Post, site: Site) -> Path:
        site_dir = None
        if self.hostname_for is not None:
            site_dir = self.hostname_for(site)
        site_dir = site_dir or site.publish_target or f"site-{site.id}"
        slug = post.slug or f"post-{post.id}"
        return self.root / site_dir / "posts" / f"{slug}.html"

    def publish(self, post: Post, site: Site) -> None:
        path = self.path_for(post, site)
        content = render_post(post)
        if path.exists() and path.read_text(encoding="utf-8") == content:
            logger.debug("publish_unchanged", post_id=post.id, path=str(path))
            return

        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(content)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.info("post_written", post_id=post.id, path=str(path))
