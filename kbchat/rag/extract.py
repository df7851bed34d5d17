"""Text extraction from uploaded source files.

PDFs are read page by page with PyMuPDF; anything else must be UTF-8 text
(plain text or markdown). Other binary formats are rejected.
"""
from typing import Optional
import fitz  # PyMuPDF
import structlog

from kbchat.errors import ExtractionError

logger = structlog.get_logger()

PDF_MAGIC = b"%PDF"
# Share of control characters above which decoded bytes are treated as binary
MAX_CONTROL_CHAR_RATIO = 0.05


def is_pdf(data: bytes, content_type: Optional[str] = None, filename: Optional[str] = None) -> bool:
    if data[:4] == PDF_MAGIC:
        return True
    if content_type and "pdf" in content_type.lower():
        return True
    return bool(filename and filename.lower().endswith(".pdf"))


def extract_pdf_text(data: bytes) -> str:
    """Extract text from PDF bytes.

    Raises:
        ExtractionError: If the PDF can't be opened
    """
    try:
        with fitz.open(stream=data, filetype="pdf") as doc:
            pages = [page.get_text() for page in doc]
    except (fitz.FileDataError, RuntimeError, ValueError) as e:
        logger.error("pdf_open_failed", error=str(e))
        raise ExtractionError(f"Could not read PDF: {e}") from e

    logger.debug("pdf_text_extracted", pages=len(pages))
    return "\n".join(pages)


def decode_text(data: bytes, filename: Optional[str] = None) -> str:
    """Decode plain text or markdown bytes as strict UTF-8.

    Raises:
        ExtractionError: If the bytes are not text (binary formats such as
            ZIP, DOCX or images)
    """
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as e:
        logger.warning("text_decode_failed", filename=filename, position=e.start)
        raise ExtractionError(
            f"Source is not UTF-8 text (invalid byte at position {e.start})"
        ) from e

    control = sum(1 for char in text if ord(char) < 32 and char not in "\t\n\r\f")
    if text and control / len(text) > MAX_CONTROL_CHAR_RATIO:
        logger.warning("text_looks_binary", filename=filename, control_chars=control)
        raise ExtractionError("Source looks like binary data, not text")

    return text


def extract_text(
    data: bytes,
    content_type: Optional[str] = None,
    filename: Optional[str] = None,
) -> str:
    """Extract text from a source file.

    Args:
        data: Raw file bytes
        content_type: MIME type, if known
        filename: File name, if known

    Returns:
        Extracted text (not yet normalized)

    Raises:
        ExtractionError: If no text can be extracted
    """
    if not data:
        raise ExtractionError("Source is empty")

    if is_pdf(data, content_type, filename):
        text = extract_pdf_text(data)
        kind = "pdf"
    else:
        text = decode_text(data, filename)
        kind = "text"

    if not text.strip():
        raise ExtractionError(f"The {kind} source contains no extractable text")

    logger.info("text_extracted", kind=kind, text_length=len(text), filename=filename)
    return text
