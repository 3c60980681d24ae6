import logging

from algoliasearch.search.client import SearchClientSync

from db import settings

logger = logging.getLogger(__name__)

def get_algolia():
    """
    Return a synchronous Algolia search client, or None when search sync is
    not configured or the client cannot be created.
    """
    if not settings.ALGOLIA_APP_ID or not settings.ALGOLIA_ADMIN_KEY or not settings.ALGOLIA_INDEX:
        logger.debug("Algolia not configured, search sync skipped")
        return None

    try:
        return SearchClientSync(settings.ALGOLIA_APP_ID, settings.ALGOLIA_ADMIN_KEY)
    except Exception:
        logger.exception("Algolia initialisation failed, search sync disabled")
        return None


def title_object_id(title: str, author: str | None) -> str:
    return f"{title}|{author or ''}".lower()


def title_to_object(title: str, author: str | None, copies: list):
    """One search record per catalog title, built from its copies."""
    first = copies[0] if copies else None
    available = sum(1 for c in copies if c.status == "Available")
    return {
        "objectID": title_object_id(title, author),
        "title": title,
        "author": author,
        "genre": first.genre if first else None,
        "category": first.category if first else None,
        "publisher": first.publisher if first else None,
        "isCore": bool(first.is_core) if first else False,
        "copyIds": [int(c.id) for c in copies],
        "totalCopies": len(copies),
        "availableCopies": available,
        "isAvailable": available > 0,
    }


def upsert_title(title: str, author: str | None, copies: list):
    client = get_algolia()
    if not client:
        return

    if not copies:
        delete_title(title, author, client)
        return

    obj = title_to_object(title, author, copies)
    client.save_object(index_name=settings.ALGOLIA_INDEX, body=obj)
    logger.debug("Indexed %s (%s available)", obj["objectID"], obj["availableCopies"])


def delete_title(title: str, author: str | None, client=None):
    client = client or get_algolia()
    if not client:
        return
    client.delete_object(index_name=settings.ALGOLIA_INDEX, object_id=title_object_id(title, author))
