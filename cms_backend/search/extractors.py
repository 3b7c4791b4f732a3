"""Per-entity-type text extraction for the search index.

Each extractor turns a source entity into an `IndexContent`: the title,
cleaned body text, search vector, visibility and a flat metadata map.
"""

import html
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from bs4 import BeautifulSoup

from cms_backend.models import ComponentTemplate, FileEntity, Page, User
from cms_backend.models.search_index import (
    CONTENT_MAX_LENGTH,
    SEARCH_VECTOR_MAX_LENGTH,
    TITLE_MAX_LENGTH,
)

logger = logging.getLogger(__name__)

MAX_COMPONENT_DEPTH = 32

_SPACE_RE = re.compile(r"\s+")


@dataclass
class IndexContent:
    title: str
    content: str
    search_vector: str
    is_public: bool
    metadata: dict[str, Any] = field(default_factory=dict)


def clean_text(text: str | None) -> str:
    """Visible text of an HTML fragment with entities decoded and whitespace collapsed."""
    if not text or not text.strip():
        return ""
    if "<" in text:
        soup = BeautifulSoup(text, "html.parser")
        for node in soup(["script", "style"]):
            node.decompose()
        text = soup.get_text(" ")
    text = html.unescape(text)
    return _SPACE_RE.sub(" ", text).strip()


def truncate(text: str, max_length: int) -> str:
    return text if len(text) <= max_length else text[:max_length]


def build_search_vector(*texts: str | None) -> str:
    """Lowercased, de-duplicated tokens of every non-empty text, in first-seen order."""
    seen: set[str] = set()
    tokens: list[str] = []
    length = 0
    for text in texts:
        for token in clean_text(text).lower().split(" "):
            if not token or token in seen:
                continue
            extra = len(token) + (1 if tokens else 0)
            if length + extra > SEARCH_VECTOR_MAX_LENGTH:
                return " ".join(tokens)
            seen.add(token)
            tokens.append(token)
            length += extra
    return " ".join(tokens)


def _component_texts(components: list | None) -> list[str]:
    """Walk a page component tree depth-first without recursion.

    Deleted nodes and their subtrees are skipped, as is anything nested
    deeper than MAX_COMPONENT_DEPTH.
    """
    texts: list[str] = []
    stack = [(node, 1) for node in reversed(components or [])]
    while stack:
        node, depth = stack.pop()
        if not isinstance(node, dict) or node.get("is_deleted"):
            continue
        if depth > MAX_COMPONENT_DEPTH:
            logger.warning("Component tree too deep — truncated | depth=%d", depth)
            continue
        if node.get("name"):
            texts.append(str(node["name"]))
        for bag in ("properties", "content"):
            values = node.get(bag) or {}
            if isinstance(values, dict):
                texts.extend(v for v in values.values() if isinstance(v, str) and v.strip())
        children = node.get("children") or []
        stack.extend((child, depth + 1) for child in reversed(children))
    return texts


def extract_page(page: Page) -> IndexContent:
    parts = [page.name, page.title, page.description, *_component_texts(page.components)]
    content = clean_text("\n".join(p for p in parts if p))
    return IndexContent(
        title=truncate(page.title or "", TITLE_MAX_LENGTH),
        content=truncate(content, CONTENT_MAX_LENGTH),
        search_vector=build_search_vector(page.title, content, page.meta_keywords, page.description),
        is_public=page.status == "Published" and not page.requires_login,
        metadata={
            "slug": page.slug,
            "status": page.status,
            "requiresLogin": page.requires_login,
            "adminOnly": page.admin_only,
            "parentPageId": page.parent_page_id or 0,
        },
    )


def extract_file(file: FileEntity) -> IndexContent:
    content = clean_text(f"{file.original_file_name} {file.description or ''} {file.alt or ''}")
    return IndexContent(
        title=truncate(file.original_file_name or "", TITLE_MAX_LENGTH),
        content=truncate(content, CONTENT_MAX_LENGTH),
        search_vector=build_search_vector(file.original_file_name, content),
        is_public=bool(file.is_public),
        metadata={
            "fileType": file.file_type,
            "contentType": file.content_type,
            "fileSize": file.file_size,
            "folderId": file.folder_id or 0,
        },
    )


def extract_user(user: User) -> IndexContent:
    content = clean_text(f"{user.first_name} {user.last_name} {user.username} {user.email}")
    return IndexContent(
        title=truncate(user.full_name, TITLE_MAX_LENGTH),
        content=truncate(content, CONTENT_MAX_LENGTH),
        search_vector=build_search_vector(user.full_name, content),
        # Users are never public
        is_public=False,
        metadata={
            "role": user.role,
            "isActive": user.is_active,
            "isLocked": user.is_locked,
        },
    )


def extract_component_template(template: ComponentTemplate) -> IndexContent:
    content = clean_text(
        f"{template.display_name} {template.description or ''} {template.category or ''} {template.tags or ''}"
    )
    return IndexContent(
        title=truncate(template.display_name or "", TITLE_MAX_LENGTH),
        content=truncate(content, CONTENT_MAX_LENGTH),
        search_vector=build_search_vector(template.display_name, content),
        is_public=True,
        metadata={
            "type": template.type,
            "category": template.category or "",
            "isSystemTemplate": template.is_system_template,
            "isActive": template.is_active,
        },
    )
