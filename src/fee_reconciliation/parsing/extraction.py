"""Text extraction adapters that turn uploaded bytes into plain text."""

import io
import logging
from abc import ABC, abstractmethod
from typing import Optional

import pdfplumber

from ..errors import StatementReadError

logger = logging.getLogger(__name__)

TEXT_KINDS = ("csv", "md")
PDF_KIND = "pdf"


class TextExtractionAdapter(ABC):
    """Base class for text extractors.

    Implementations receive the raw upload and the lower-cased file
    extension without the dot ("csv", "md" or "pdf").
    """

    @abstractmethod
    def extract(self, data: bytes, kind: str) -> str:
        """Return the document text.

        Raises:
            StatementReadError: If the bytes cannot be read as the given kind.
        """
        pass


class DefaultTextExtractor(TextExtractionAdapter):
    """UTF-8 decoding for text formats, pdfplumber for PDFs."""

    def __init__(self, encoding: str = "utf-8-sig", fallback_encoding: Optional[str] = "latin-1"):
        self.encoding = encoding
        self.fallback_encoding = fallback_encoding

    def extract(self, data: bytes, kind: str) -> str:
        if kind == PDF_KIND:
            return self._extract_pdf(data)
        return self._decode(data)

    def _decode(self, data: bytes) -> str:
        try:
            return data.decode(self.encoding)
        except UnicodeDecodeError as e:
            if self.fallback_encoding is None:
                raise StatementReadError(f"Statement is not valid {self.encoding} text: {e}") from e
            logger.warning(f"Statement is not {self.encoding}, decoding as {self.fallback_encoding}")
            return data.decode(self.fallback_encoding)

    def _extract_pdf(self, data: bytes) -> str:
        try:
            with pdfplumber.open(io.BytesIO(data)) as pdf:
                pages = [page.extract_text() or "" for page in pdf.pages]
        except Exception as e:
            raise StatementReadError(f"Could not read PDF statement: {e}") from e

        if not any(text.strip() for text in pages):
            logger.warning("PDF statement has no extractable text; it may be a scanned image")
        return "\n".join(pages)


def get_text_extractor(name: str = "default") -> TextExtractionAdapter:
    """Factory function to get a text extractor by name.

    Args:
        name: Extractor name. Only "default" is built in.

    Returns:
        TextExtractionAdapter instance.

    Raises:
        ValueError: If the name is unknown.
    """
    extractors = {
        "default": DefaultTextExtractor,
    }
    extractor_class = extractors.get(name.lower())
    if extractor_class is None:
        raise ValueError(f"Unsupported text extractor: {name}. Supported: {list(extractors.keys())}")
    return extractor_class()
