"""
Formato de respuesta estándar { data, error, meta }.
Los routers JSON y los exception handlers globales usan estas funciones.
"""

from typing import Any


def ok(data: Any = None, meta: dict | None = None) -> dict:
    return {"data": data, "error": None, "meta": meta or {}}


def paginated(items: list, page: int, limit: int, total: int) -> dict:
    """Respuesta de listado: meta con page, limit, total y pages (mínimo 1)."""
    pages = max(1, -(-total // limit))
    return ok(data=items, meta={"page": page, "limit": limit, "total": total, "pages": pages})


def err(message: str, meta: dict | None = None) -> dict:
    """Respuesta de error. El mensaje NUNCA debe incluir secretos, tokens ni trazas internas."""
    return {"data": None, "error": message, "meta": meta or {}}
