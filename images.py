"""
Image URL resolution for the statically exported storefront.

The site is served from the domain root locally and on a custom domain, and
from a /<repo> subpath on GitHub Pages. The host context is always passed in;
nothing here reads request or process state.
"""
from typing import Optional
from pydantic import BaseModel

LOCAL_HOSTNAMES = ("localhost", "127.0.0.1")


class HostContext(BaseModel):
    hostname: Optional[str] = None  # None while pre-rendering
    pathname: str = "/"
    base_path: Optional[str] = None


class EnvironmentInfo(BaseModel):
    is_server: bool
    is_github_pages: bool = False
    is_localhost: bool = False
    is_custom_domain: bool = False
    hostname: Optional[str] = None


def _normalize(path: str) -> str:
    return "/" + path.lstrip("/")


def _base_path(host: HostContext) -> str:
    if host.hostname is None:
        return ""
    if host.base_path:
        stripped = host.base_path.strip("/")
        return f"/{stripped}" if stripped else ""
    if "github.io" in host.hostname:
        repo_name = host.pathname.strip("/").split("/")[0]
        return f"/{repo_name}" if repo_name else ""
    return ""


def resolve_image_url(path: str, host: HostContext) -> str:
    if path.startswith("http://") or path.startswith("https://"):
        return path

    normalized = _normalize(path)
    if normalized != "/images" and "/images/" not in normalized:
        normalized = f"/images{normalized}"

    return f"{_base_path(host)}{normalized}"


def detect_environment(host: HostContext) -> EnvironmentInfo:
    if host.hostname is None:
        return EnvironmentInfo(is_server=True)

    is_github_pages = "github.io" in host.hostname
    is_localhost = host.hostname in LOCAL_HOSTNAMES
    return EnvironmentInfo(
        is_server=False,
        is_github_pages=is_github_pages,
        is_localhost=is_localhost,
        is_custom_domain=not is_github_pages and not is_localhost,
        hostname=host.hostname,
    )
