"""nginx configuration for static web previews."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Iterable


class ContentKind(str, Enum):
    """How a workspace should be served."""

    SPA = "spa"  # html present: serve it, unknown routes fall back to index.html
    NODE_LISTING = "node_listing"  # index.js project: browsable listing of sources
    LISTING = "listing"  # anything else: plain directory listing


# Served as text/plain so the browser shows them instead of downloading
SOURCE_EXTENSIONS = (
    "py", "java", "c", "cpp", "h", "hpp", "go", "rs", "rb", "php",
    "sh", "ts", "tsx", "jsx", "kt", "scala", "swift", "md", "txt",
)
NODE_EXTENSIONS = ("js", "mjs", "cjs", "json")

_CACHE_HEADERS = """\
    etag off;
    add_header Cache-Control "no-store, no-cache, must-revalidate, proxy-revalidate, max-age=0" always;
    add_header Pragma "no-cache" always;
    add_header Expires "0" always;
"""


def classify_names(names: Iterable[str]) -> ContentKind:
    """Classify from the top-level file names of the content directory."""
    names = list(names)
    if any(n.lower().endswith((".html", ".htm")) for n in names):
        return ContentKind.SPA
    if "index.js" in names:
        return ContentKind.NODE_LISTING
    return ContentKind.LISTING


def classify_directory(directory: Path) -> ContentKind:
    if not directory.is_dir():
        return ContentKind.LISTING
    return classify_names(p.name for p in directory.iterdir() if p.is_file())


def _plain_text_location(extensions: Iterable[str]) -> str:
    pattern = "|".join(extensions)
    return (
        f"    location ~* \\.({pattern})$ {{\n"
        "        types { }\n"
        "        default_type text/plain;\n"
        "        charset utf-8;\n"
        "    }\n"
    )


def render_config(kind: ContentKind) -> str:
    """Render a complete ``default.conf`` server block for ``kind``."""
    lines = [
        "server {\n",
        "    listen 80;\n",
        "    server_name _;\n",
        "    root /usr/share/nginx/html;\n",
        _CACHE_HEADERS,
    ]

    if kind == ContentKind.SPA:
        lines.append("    index index.html index.htm;\n")
        lines.append("    location / {\n        try_files $uri $uri/ /index.html;\n    }\n")
    elif kind == ContentKind.NODE_LISTING:
        # No index directive: the listing must show index.js itself
        lines.append("    index __berth_no_index__;\n")
        lines.append("    location / {\n        autoindex on;\n        autoindex_exact_size off;\n    }\n")
        lines.append(_plain_text_location(NODE_EXTENSIONS + SOURCE_EXTENSIONS))
    else:
        lines.append("    location / {\n        autoindex on;\n        autoindex_exact_size off;\n    }\n")
        lines.append(_plain_text_location(SOURCE_EXTENSIONS))

    lines.append("}\n")
    return "".join(lines)
