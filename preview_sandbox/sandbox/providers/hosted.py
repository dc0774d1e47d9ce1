"""
Hosted preview providers - embed third-party live previews.

Used when the local container runtime is unavailable. Each provider talks to
one service over HTTP with its own auth and timeout; transport failures and
5xx answers are transient, 4xx answers are permanent.
"""

import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from preview_sandbox.schemas import SandboxType
from preview_sandbox.sandbox.errors import ProviderError, RuntimeUnavailable
from preview_sandbox.sandbox.frameworks import get_profile, scaffold_files
from preview_sandbox.sandbox.providers.base import PreviewProvider, ProvisionRequest, ProvisionResult

logger = logging.getLogger(__name__)


class HostedProvider(PreviewProvider):
    """Base for providers backed by a remote HTTP API."""

    def __init__(self, timeout: Optional[float] = 30, client: Optional[httpx.AsyncClient] = None):
        self.timeout = timeout
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout or 30))
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request_json(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        """
        Send a request and decode a JSON object answer.

        Raises:
            RuntimeUnavailable: On transport errors and 5xx answers
            ProviderError: On 4xx answers and malformed bodies
        """
        client = await self._get_client()
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise RuntimeUnavailable(f"{self.name} unreachable: {e}") from e

        if response.status_code >= 500:
            raise RuntimeUnavailable(f"{self.name} returned {response.status_code}")
        if response.status_code >= 400:
            raise ProviderError(f"{self.name} rejected the request ({response.status_code}): {response.text[:200]}")

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(f"{self.name} returned a non-JSON body") from e
        if not isinstance(data, dict):
            raise ProviderError(f"{self.name} returned an unexpected body")
        return data


# =============================================================================
# E2B
# =============================================================================

class E2BProvider(HostedProvider):
    """Remote microVM sandbox on e2b.dev. Requires an API key."""

    name = "e2b"
    sandbox_type = SandboxType.E2B

    def __init__(self, api_key: str, api_url: str = "https://api.e2b.dev", **kwargs: Any):
        super().__init__(**kwargs)
        self.api_key = api_key
        self.api_url = api_url.rstrip("/")

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def attempt_provision(self, request: ProvisionRequest) -> ProvisionResult:
        data = await self._request_json(
            "POST",
            f"{self.api_url}/sandboxes",
            headers=self._headers(),
            json={
                "template": "base",
                "metadata": {
                    "projectId": request.project_id,
                    "framework": request.framework,
                    "sandboxId": request.sandbox_id,
                },
            },
        )
        e2b_id = data.get("id") or data.get("sandboxId")
        if not e2b_id:
            raise ProviderError("e2b response did not include a sandbox id")

        logger.info("E2B sandbox created: %s", e2b_id)
        return ProvisionResult(
            url=f"https://{e2b_id}.e2b.dev",
            type=SandboxType.E2B,
            runtime_id=str(e2b_id),
            logs=[f"E2B sandbox {e2b_id} created"],
        )

    async def release(self, result: ProvisionResult, sandbox_id: str) -> None:
        if not result.runtime_id:
            return
        client = await self._get_client()
        try:
            await client.delete(f"{self.api_url}/sandboxes/{result.runtime_id}", headers=self._headers())
        except httpx.HTTPError as e:
            logger.warning("Could not delete E2B sandbox %s: %s", result.runtime_id, e)


# =============================================================================
# CODESANDBOX
# =============================================================================

class CodeSandboxProvider(HostedProvider):
    """Embedded live preview defined through the CodeSandbox define API."""

    name = "codesandbox"
    sandbox_type = SandboxType.CODESANDBOX

    def __init__(self, base_url: str = "https://codesandbox.io", api_key: Optional[str] = None, **kwargs: Any):
        super().__init__(**kwargs)
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key

    async def attempt_provision(self, request: ProvisionRequest) -> ProvisionResult:
        profile = get_profile(request.framework)
        files = scaffold_files(request.files, request.framework)
        files.pop(".dockerignore", None)

        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        data = await self._request_json(
            "POST",
            f"{self.base_url}/api/v1/sandboxes/define",
            params={"json": 1},
            headers=headers,
            json={
                "template": profile.codesandbox_template,
                "files": {path: {"content": content} for path, content in files.items()},
            },
        )
        sandbox_id = data.get("sandbox_id")
        if not sandbox_id:
            raise ProviderError("codesandbox response did not include a sandbox_id")

        url = f"{self.base_url}/s/{sandbox_id}"
        logger.info("CodeSandbox created: %s", url)
        return ProvisionResult(
            url=url,
            type=SandboxType.CODESANDBOX,
            runtime_id=f"codesandbox_{sandbox_id}",
            logs=[f"CodeSandbox {sandbox_id} defined"],
        )


# =============================================================================
# STACKBLITZ
# =============================================================================

# Browsers and proxies start truncating around this length
MAX_EMBED_URL_LENGTH = 8000


class StackBlitzProvider(PreviewProvider):
    """
    StackBlitz embed carrying the project in the URL.

    There is no API call: the URL itself is the project. Large projects do not
    fit and are rejected.
    """

    name = "stackblitz"
    sandbox_type = SandboxType.STACKBLITZ

    def __init__(self, timeout: Optional[float] = 5, base_url: str = "https://stackblitz.com"):
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")

    async def attempt_provision(self, request: ProvisionRequest) -> ProvisionResult:
        profile = get_profile(request.framework)
        files = scaffold_files(request.files, request.framework)
        files.pop(".dockerignore", None)

        params = {
            "project[title]": f"Preview {request.project_id}",
            "project[template]": profile.stackblitz_template,
            "embed": "1",
            "view": "preview",
            "hideNavigation": "1",
        }
        for path, content in sorted(files.items()):
            params[f"project[files][{path}]"] = content

        url = f"{self.base_url}/run?{urlencode(params)}"
        if len(url) > MAX_EMBED_URL_LENGTH:
            raise ProviderError(
                f"Project too large for a StackBlitz embed URL ({len(url)} > {MAX_EMBED_URL_LENGTH} chars)"
            )

        return ProvisionResult(
            url=url,
            type=SandboxType.STACKBLITZ,
            runtime_id=f"stackblitz_{int(time.time() * 1000)}",
            logs=["StackBlitz embed URL generated"],
        )
