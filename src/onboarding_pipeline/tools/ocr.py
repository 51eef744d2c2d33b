import json
import mimetypes
import os
import re
import tempfile
from datetime import datetime, timezone

import cv2
import filetype
import fitz  # PyMuPDF
import numpy as np
import pytesseract
from crewai.tools import tool
from PIL import Image

from .runlog import append_runlog

ALLOWED_MIME_TYPES = {"image/jpeg", "image/png", "image/tiff", "image/webp", "application/pdf"}
MAX_FILE_SIZE_MB = 10
MAX_PDF_PAGES = 3


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _detect_mime(path: str) -> str:
    """Signature-based detection via filetype, else extension-based mimetypes."""
    kind = filetype.guess(path)
    if kind is not None and kind.mime:
        return kind.mime
    mime, _ = mimetypes.guess_type(path)
    return mime or "application/octet-stream"


def _preprocess_for_ocr(img_bgr) -> str:
    """Grayscale + Otsu binarization with OpenCV, then Tesseract. Returns raw text."""
    gray = cv2.cvtColor(img_bgr, cv2.COLOR_BGR2GRAY)
    _, bw = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY | cv2.THRESH_OTSU)

    with tempfile.NamedTemporaryFile(suffix=".png", delete=False) as tmp:
        temp_path = tmp.name
    try:
        cv2.imwrite(temp_path, bw)
        with Image.open(temp_path) as img:
            return pytesseract.image_to_string(img)
    finally:
        os.remove(temp_path)


def _pdf_text_or_images(pdf_path: str):
    """
    Embedded text of the first pages if the PDF has any (clearance emails do),
    otherwise the rendered pages as BGR images for OCR.
    """
    with fitz.open(pdf_path) as doc:
        if doc.page_count == 0:
            raise ValueError("PDF has no pages.")
        pages = [doc.load_page(i) for i in range(min(doc.page_count, MAX_PDF_PAGES))]
        text = "\n".join(page.get_text() for page in pages).strip()
        if text:
            return text, []
        images = []
        for page in pages:
            pix = page.get_pixmap(matrix=fitz.Matrix(2, 2), alpha=False)
            img = np.frombuffer(pix.samples, dtype=np.uint8).reshape(pix.height, pix.width, pix.n)
            images.append(cv2.cvtColor(img, cv2.COLOR_RGB2BGR))
        return "", images


def sanitize_ocr_text(text: str) -> str:
    """Reject script-like payloads in OCR output; strip control chars and collapse spaces."""
    suspicious_patterns = [
        r"<script.*?>", r"</script>",
        r"(?i)os\.system", r"(?i)subprocess",
        r"(?i)eval\(", r"(?i)rm\s+-rf",
        r"(?i)curl\s+http", r"(?i)wget\s+http",
        r"(?i)ignore (all )?previous instructions",
    ]
    for pattern in suspicious_patterns:
        if re.search(pattern, text):
            raise ValueError(f"Suspicious content detected: pattern '{pattern}'")

    sanitized = re.sub(r"[\x00-\x08\x0B-\x1F\x7F]", "", text)
    sanitized = re.sub(r"[ \t]+", " ", sanitized)
    return sanitized.strip()


def extract_document_text(path: str) -> dict:
    """Validate a local passport / selfie / clearance file and return its text."""
    started_at = _utc_now()
    try:
        if not os.path.exists(path):
            raise FileNotFoundError(f"File not found: {path}")

        file_size_mb = os.path.getsize(path) / (1024 * 1024)
        if file_size_mb > MAX_FILE_SIZE_MB:
            raise ValueError(f"File too large ({file_size_mb:.2f} MB). Limit is {MAX_FILE_SIZE_MB} MB.")

        mime_type = _detect_mime(path)
        if mime_type not in ALLOWED_MIME_TYPES:
            raise ValueError(f"Unsupported file type: {mime_type}")

        if mime_type == "application/pdf":
            text, images = _pdf_text_or_images(path)
        else:
            img_bgr = cv2.imread(path)
            if img_bgr is None:
                raise ValueError("Unable to read image (possibly corrupted or unsupported).")
            text, images = "", [img_bgr]
        if not text:
            text = "\n".join(_preprocess_for_ocr(img) for img in images)

        safe_text = sanitize_ocr_text(text)
        append_runlog({
            "context": "OCR_EXTRACT",
            "details": {
                "file_path": path,
                "mime_type": mime_type,
                "status": "success",
                "extracted_length": len(safe_text),
                "started_at": started_at,
                "finished_at": _utc_now(),
            },
        })
        return {
            "file_path": path,
            "text": safe_text,
            "mime_type": mime_type,
            "file_size_mb": round(file_size_mb, 2),
            "status": "success",
        }
    except Exception as e:
        append_runlog({
            "context": "OCR_EXTRACT",
            "details": {
                "file_path": path,
                "status": "failed",
                "error": str(e),
                "started_at": started_at,
                "finished_at": _utc_now(),
            },
        })
        raise


@tool("ocr_extract")
def ocr_extract(file_path: str) -> str:
    """
    Extract text from a passport photo, selfie or clearance document (JPEG/PNG/TIFF/WEBP/PDF).
    Accepts a local file path. Returns JSON: {file_path, text, mime_type, file_size_mb, status}.
    """
    print(f"[ocr_extract] reading {file_path}")
    return json.dumps(extract_document_text(file_path), ensure_ascii=False)
