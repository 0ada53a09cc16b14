"""
services/ocr_ingest.py

Question ingestion from scanned exam papers.

Public API:
  - ocr_image(file_bytes, filename) -> str         : OCR text of one image
  - ocr_pdf(file_bytes) -> str                     : OCR text of every PDF page
  - extract_questions(text, ai) -> List[QuestionDraft]
  - ingest(file_bytes, filename, ai) -> (drafts, cleaned_text)

Pipeline:
- PDF pages are rasterized with PyMuPDF and sent to the OCR service one by one
- OCR text is cleaned, then the text-generation model extracts questions as JSON
- A page that fails OCR is skipped; the rest of the document still goes through
"""

import json
import logging
import re
from typing import List, Optional, Tuple

import fitz  # PyMuPDF
import httpx

from config import HTTP_TIMEOUT, MAX_PDF_PAGES, OCR_SPACE_API_KEY, OCR_SPACE_URL, VISION_DPI
from exam_practice.models.question_model import QuestionDraft
from exam_practice.services.ai_client import AIServiceError, TextGenerationClient, clean_json_response
from exam_practice.services.question_bank import normalize_options

logger = logging.getLogger(__name__)


class OCRError(Exception):
    """The OCR service returned no text."""


_EXTRACT_SYSTEM_PROMPT = (
    "You are an expert in Nigerian exams (WAEC, JAMB, NECO). "
    "You extract exam questions from OCR text and answer ONLY with JSON."
)


def _build_extract_prompt(text: str) -> str:
    return (
        "Extract all exam questions from this OCR text.\n"
        "Return ONLY JSON in this format:\n"
        "{\n"
        '  "questions": [\n'
        "    {\n"
        '      "number": 1,\n'
        '      "question": "",\n'
        '      "options": {"A": "", "B": "", "C": "", "D": ""}\n'
        "    }\n"
        "  ]\n"
        "}\n"
        "If something is missing (like options), put empty strings.\n"
        "\n"
        "OCR TEXT:\n"
        f"{text}"
    )


def clean_ocr_text(raw: str) -> str:
    """Drop CRs, collapse blank lines and runs of horizontal whitespace."""
    text = raw.replace("\r", "")
    text = re.sub(r"\n{2,}", "\n", text)
    text = re.sub(r"[^\S\n]+", " ", text)
    return text.strip()


async def ocr_image(
    file_bytes: bytes,
    filename: str = "page.png",
    *,
    api_key: str = OCR_SPACE_API_KEY,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    if not api_key:
        raise OCRError("OCR service is not configured")

    async with httpx.AsyncClient(timeout=HTTP_TIMEOUT * 4, transport=transport) as client:
        try:
            response = await client.post(
                OCR_SPACE_URL,
                files={"file": (filename, file_bytes)},
                data={"apikey": api_key, "language": "eng"},
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"OCR request failed for {filename}: {e}")
            raise OCRError(f"OCR request failed: {e}") from e

    results = (data.get("ParsedResults") or []) if isinstance(data, dict) else []
    text = results[0].get("ParsedText") if results else None
    if not text:
        raise OCRError("OCR failed to extract text.")
    return text


async def ocr_pdf(file_bytes: bytes, **kwargs) -> str:
    if not file_bytes:
        raise ValueError("PDF file is empty.")

    try:
        doc = fitz.open(stream=file_bytes, filetype="pdf")
    except Exception as e:
        raise ValueError(f"Could not open PDF: {e}") from e

    try:
        if len(doc) > MAX_PDF_PAGES:
            raise ValueError(f"PDF has too many pages ({len(doc)}). At most {MAX_PDF_PAGES} are supported.")

        pages: List[str] = []
        for i in range(len(doc)):
            png_bytes = doc.load_page(i).get_pixmap(dpi=VISION_DPI).tobytes("png")
            try:
                pages.append(await ocr_image(png_bytes, f"page-{i + 1}.png", **kwargs))
            except OCRError as e:
                logger.warning(f"page {i + 1}: OCR skipped: {e}")
        logger.info(f"ocr_pdf: {len(pages)}/{len(doc)} pages recognized")
    finally:
        doc.close()

    if not pages:
        raise OCRError("OCR failed to extract text.")
    return "\n".join(pages)


def parse_drafts(raw: str) -> List[QuestionDraft]:
    """Model JSON -> drafts. Items without question text are dropped."""
    cleaned = clean_json_response(raw)
    if not cleaned:
        return []
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        return []

    if isinstance(data, dict):
        data = data.get("questions", [])
    if not isinstance(data, list):
        return []

    drafts: List[QuestionDraft] = []
    for idx, item in enumerate(data):
        if not isinstance(item, dict) or not str(item.get("question", "")).strip():
            continue
        try:
            number = int(item.get("number") or idx + 1)
        except (TypeError, ValueError):
            number = idx + 1
        drafts.append(QuestionDraft(
            number=number,
            question=str(item["question"]).strip(),
            options=normalize_options(item),
        ))
    return drafts


async def extract_questions(text: str, ai: TextGenerationClient) -> List[QuestionDraft]:
    try:
        raw = await ai.complete(_EXTRACT_SYSTEM_PROMPT, _build_extract_prompt(text), max_tokens=2000)
    except AIServiceError as e:
        logger.error(f"question extraction failed: {e}")
        return []
    drafts = parse_drafts(raw)
    logger.info(f"extract_questions: {len(drafts)} questions extracted")
    return drafts


async def ingest(
    file_bytes: bytes, filename: str, ai: TextGenerationClient, **kwargs,
) -> Tuple[List[QuestionDraft], str]:
    """Scan (image or PDF) -> (question drafts, cleaned OCR text)."""
    if filename.lower().endswith(".pdf"):
        raw_text = await ocr_pdf(file_bytes, **kwargs)
    else:
        raw_text = await ocr_image(file_bytes, filename, **kwargs)
    cleaned = clean_ocr_text(raw_text)
    return await extract_questions(cleaned, ai), cleaned
