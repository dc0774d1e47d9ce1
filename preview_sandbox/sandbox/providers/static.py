"""
Static render provider - last resort of the fallback chain.

Produces a non-interactive snapshot of the project as a data: URL. It never
fails, which is what guarantees every create request ends with a usable URL.
"""

import logging
from typing import Optional
from urllib.parse import quote

from preview_sandbox.schemas import SandboxType
from preview_sandbox.sandbox.providers.base import PreviewProvider, ProvisionRequest, ProvisionResult
from preview_sandbox.sandbox.providers.render import StaticRenderer

logger = logging.getLogger(__name__)

MINIMAL_PAGE = (
    "<!DOCTYPE html><html><head><meta charset=\"utf-8\"><title>Preview</title></head>"
    "<body><p>Preview unavailable for this project.</p></body></html>"
)


def html_data_url(document: str) -> str:
    return "data:text/html;charset=utf-8," + quote(document)


class StaticRenderProvider(PreviewProvider):
    """Render the project into a single HTML page."""

    name = "static"
    sandbox_type = SandboxType.STATIC
    last_resort = True

    def __init__(self, renderer: Optional[StaticRenderer] = None, timeout: Optional[float] = 10):
        self.renderer = renderer or StaticRenderer()
        self.timeout = timeout

    async def attempt_provision(self, request: ProvisionRequest) -> ProvisionResult:
        logs = [f"Rendered static preview of {len(request.files)} files"]
        try:
            document = self.renderer.render(request.files, title=f"Preview {request.project_id}")
        except Exception:
            logger.exception("Static renderer failed for %s, serving minimal page", request.sandbox_id)
            document = MINIMAL_PAGE
            logs = ["Static renderer failed; serving minimal page"]

        return ProvisionResult(
            url=html_data_url(document),
            type=SandboxType.STATIC,
            runtime_id=f"static_{request.sandbox_id}",
            logs=logs,
        )
