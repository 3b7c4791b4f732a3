"""Hierarchical cache key builders.

Keys are colon-separated so that a whole family can be dropped with one
glob pattern (e.g. `product:*`).
"""

SEARCH_PREFIX = "search"
SUGGESTIONS_PREFIX = "suggestions"

COMPANY_MAIN = "company:main"
FILE_RECENT = "file:recent"
FILE_STATISTICS = "file:statistics"
INDEXING_STATUS = "search:indexing:status"


def company(company_id: int) -> str:
    return f"company:id:{company_id}"


def product(product_id: int) -> str:
    return f"product:id:{product_id}"


def product_by_slug(slug: str) -> str:
    return f"product:slug:{slug}"


def product_list(page: int, size: int) -> str:
    return f"products:list:page:{page}:size:{size}"


def product_variants(product_id: int) -> str:
    return f"product:variants:{product_id}"


def file(file_id: int) -> str:
    return f"file:id:{file_id}"


def file_list(page: int, size: int, folder_id: int | None = None) -> str:
    folder = "all" if folder_id is None else folder_id
    return f"file:list:{folder}:page:{page}:size:{size}"


def page(page_id: int) -> str:
    return f"page:id:{page_id}"


def page_by_slug(slug: str) -> str:
    return f"page:slug:{slug}"


def suggestions(query: str, max_suggestions: int) -> str:
    return f"{SUGGESTIONS_PREFIX}:{query.strip().lower()}:{max_suggestions}"


def pattern(prefix: str) -> str:
    """All keys under a prefix: `pattern("file") == "file:*"`."""
    return f"{prefix.rstrip(':')}:*"