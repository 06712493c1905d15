import logging
from typing import Dict

logger = logging.getLogger(__name__)


class DocumentRepository:
    """Read access to reference documents (articles) by id."""

    async def get_full_text(self, document_id: str) -> str | None:
        """Return the document's full text, or None when it is unknown."""
        raise NotImplementedError


class InMemoryDocumentRepository(DocumentRepository):
    """Dict-backed repository, used for local runs and tests."""

    def __init__(self, documents: Dict[str, str] | None = None) -> None:
        self._documents: Dict[str, str] = dict(documents or {})

    def add(self, document_id: str, full_text: str) -> None:
        self._documents[document_id] = full_text

    async def get_full_text(self, document_id: str) -> str | None:
        text = self._documents.get(document_id)
        if text is None:
            logger.debug("Document %s not found", document_id)
        return text
