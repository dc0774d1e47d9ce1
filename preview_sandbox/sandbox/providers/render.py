"""
Static renderer - turn a generated project into a single non-interactive HTML page.

The conversion is deliberately shallow: it lifts the markup returned by the
main page component, rewrites JSX attributes to HTML and drops expressions.
"""

import html
import re
from typing import Dict, Optional, Tuple

MAIN_PAGE_CANDIDATES = (
    "src/app/page.tsx",
    "app/page.tsx",
    "src/app/page.jsx",
    "app/page.jsx",
    "src/App.tsx",
    "src/App.jsx",
    "src/App.js",
    "pages/index.tsx",
    "pages/index.js",
    "src/index.tsx",
)

STYLE_CANDIDATES = ("src/app/globals.css", "app/globals.css", "src/index.css", "styles/globals.css")

HTML_CANDIDATES = ("index.html", "public/index.html")


class StaticRenderer:
    """Render generated files into a standalone HTML document."""

    def __init__(self, tailwind_cdn: str = "https://cdn.tailwindcss.com"):
        self.tailwind_cdn = tailwind_cdn

    def render(self, files: Dict[str, str], title: str = "Preview") -> str:
        """
        Render a project.

        Args:
            files: Generated path->content mapping
            title: Document title

        Returns:
            HTML document
        """
        page = self._existing_html(files)
        if page:
            return page

        styles = "\n".join(files[p] for p in STYLE_CANDIDATES if p in files)
        styles = re.sub(r"@tailwind[^;]*;", "", styles)

        body = ""
        main_path, main_source = self._find_main_page(files)
        if main_source:
            body = jsx_to_html(main_source)
        if len(body.strip()) < 20:
            body = self._summary(files)

        return (
            "<!DOCTYPE html>\n"
            "<html lang=\"en\">\n<head>\n"
            "<meta charset=\"utf-8\">\n"
            "<meta name=\"viewport\" content=\"width=device-width, initial-scale=1\">\n"
            f"<title>{html.escape(title)}</title>\n"
            f"<script src=\"{self.tailwind_cdn}\"></script>\n"
            f"<style>{styles}</style>\n"
            "</head>\n<body>\n"
            f"{body}\n"
            "</body>\n</html>\n"
        )

    def _existing_html(self, files: Dict[str, str]) -> Optional[str]:
        for path in HTML_CANDIDATES:
            content = files.get(path, "")
            # Only documents with real content; SPA shells only hold a mount point
            if "<body" in content and 'id="root"' not in content and "id='app'" not in content:
                return content
        return None

    def _find_main_page(self, files: Dict[str, str]) -> Tuple[Optional[str], Optional[str]]:
        for path in MAIN_PAGE_CANDIDATES:
            if path in files:
                return path, files[path]
        for path, content in files.items():
            if path.endswith(("page.tsx", "page.jsx", "App.tsx", "App.jsx", "App.js")):
                return path, content
        return None, None

    def _summary(self, files: Dict[str, str]) -> str:
        items = "\n".join(
            f"<li class=\"font-mono text-sm\">{html.escape(path)}</li>" for path in sorted(files)
        )
        return (
            "<main class=\"max-w-2xl mx-auto p-8\">"
            "<h1 class=\"text-2xl font-bold mb-4\">Project preview</h1>"
            "<p class=\"mb-4 text-gray-600\">A live preview is not available. Generated files:</p>"
            f"<ul class=\"list-disc pl-6\">{items}</ul>"
            "</main>"
        )


def extract_returned_markup(source: str) -> str:
    """Return the markup inside the last top-level `return ( ... )` of a component."""
    matches = list(re.finditer(r"return\s*\(", source))
    if not matches:
        return ""
    start = matches[-1].end()
    depth = 1
    for index in range(start, len(source)):
        char = source[index]
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth == 0:
                return source[start:index]
    return ""


def jsx_to_html(source: str) -> str:
    """Best-effort conversion of a component's JSX markup to static HTML."""
    markup = extract_returned_markup(source)
    if not markup:
        return ""

    # Fragments
    markup = re.sub(r"<>|</>", "", markup)
    # JSX attribute names
    markup = markup.replace("className=", "class=").replace("htmlFor=", "for=")
    # String expressions in attributes: class={"a b"} -> class="a b"
    markup = re.sub(r'=\{\s*["\']([^"\']*)["\']\s*\}', r'="\1"', markup)
    # Remaining attribute expressions
    markup = re.sub(r"\s[\w:-]+=\{[^{}]*\}", "", markup)
    # Event handlers and spreads that survived
    markup = re.sub(r"\s\{\.\.\.[^}]*\}", "", markup)
    # Comments and text expressions
    markup = re.sub(r"\{/\*.*?\*/\}", "", markup, flags=re.DOTALL)
    markup = re.sub(r"\{[^{}]*\}", "", markup)
    # Custom components (capitalized tags) have no HTML meaning
    markup = re.sub(r"<([A-Z][\w.]*)[^>]*/>", "", markup)
    markup = re.sub(r"</?[A-Z][\w.]*[^>]*>", "", markup)
    return markup.strip()
