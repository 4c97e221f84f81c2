"""
OCR pre-pass.

Optional: positioned text from Tesseract gives the vision prompt extra
context and gives items a pixel-based position estimate when their
`source_text` can be found among the OCR lines. Scans work without it.
"""

from dataclasses import dataclass, field
from typing import List, Optional
import asyncio
import io
import logging

import pytesseract
from PIL import Image

from pantry_scanner.schemas.receipt import ReceiptItem
from pantry_scanner.services.results import CallResult
from pantry_scanner.services.similarity import name_similarity

logger = logging.getLogger(__name__)

OCR_MATCH_THRESHOLD = 0.5


@dataclass
class OCRToken:
    text: str
    confidence: float
    x: int
    y: int
    width: int
    height: int


@dataclass
class OCRLine:
    id: int
    text: str
    tokens: List[OCRToken]
    x: int
    y: int
    width: int
    height: int
    avg_confidence: float


@dataclass
class OCRResult:
    lines: List[OCRLine] = field(default_factory=list)
    image_width: int = 0
    image_height: int = 0
    total_confidence: float = 0.0

    def line(self, line_id: int) -> Optional[OCRLine]:
        return next((line for line in self.lines if line.id == line_id), None)


def _line_from_tokens(tokens: List[OCRToken], line_id: int) -> OCRLine:
    tokens = sorted(tokens, key=lambda t: t.x)
    min_x = min(t.x for t in tokens)
    min_y = min(t.y for t in tokens)
    max_x = max(t.x + t.width for t in tokens)
    max_y = max(t.y + t.height for t in tokens)
    return OCRLine(
        id=line_id,
        text=" ".join(t.text for t in tokens),
        tokens=tokens,
        x=min_x,
        y=min_y,
        width=max_x - min_x,
        height=max_y - min_y,
        avg_confidence=sum(t.confidence for t in tokens) / len(tokens),
    )


def group_tokens_into_lines(tokens: List[OCRToken], y_tolerance: int = 5) -> List[OCRLine]:
    """Tokens whose top edges are within `y_tolerance` pixels of the previous token form one line."""
    if not tokens:
        return []
    ordered = sorted(tokens, key=lambda t: (t.y, t.x))
    lines: List[OCRLine] = []
    current = [ordered[0]]
    for prev, token in zip(ordered, ordered[1:]):
        if abs(token.y - prev.y) < y_tolerance:
            current.append(token)
        else:
            lines.append(_line_from_tokens(current, len(lines)))
            current = [token]
    lines.append(_line_from_tokens(current, len(lines)))
    return lines


def format_ocr_for_prompt(result: OCRResult) -> str:
    rows = "\n".join(
        f"[{line.id}] y={line.y} conf={round(line.avg_confidence)}: {line.text}"
        for line in result.lines
    )
    return f"""OCR TEXT STRUCTURE ({len(result.lines)} lines detected, image {result.image_width}x{result.image_height}px, average confidence {result.total_confidence:.1f}%):
{rows}

INSTRUCTIONS FOR USING OCR DATA:
1. For each item you extract, reference its OCR line via "ocr_line_id"
2. Use the OCR text to help read difficult items, but OCR makes mistakes: the IMAGE wins
3. If an item spans several OCR lines, reference the FIRST one"""


def position_from_ocr_line(line: OCRLine, result: OCRResult) -> Optional[float]:
    if result.image_height <= 0:
        return None
    return max(0.0, min(100.0, line.y / result.image_height * 100))


def match_item_to_ocr_line(source_text: str, result: OCRResult, threshold: float = OCR_MATCH_THRESHOLD) -> Optional[OCRLine]:
    best, best_score = None, threshold
    for line in result.lines:
        score = name_similarity(source_text, line.text)
        if score > best_score:
            best, best_score = line, score
    return best


def apply_ocr_positions(items: List[ReceiptItem], result: OCRResult) -> List[ReceiptItem]:
    """Replace raw position estimates with OCR line positions where an item can be located."""
    if not result.lines:
        return list(items)

    updated = []
    located = 0
    for item in items:
        line = result.line(item.ocr_line_id) if item.ocr_line_id is not None else None
        if line is None and item.source_text:
            line = match_item_to_ocr_line(item.source_text, result)
        position = position_from_ocr_line(line, result) if line is not None else None
        if position is None:
            updated.append(item)
            continue
        located += 1
        updated.append(item.model_copy(update={"position_percent": round(position, 2), "ocr_line_id": line.id}))

    logger.info(f"OCR located {located}/{len(items)} items")
    return updated


# ============== PROVIDERS ==============

class OCRProvider:
    """Anything that turns an image into positioned text."""

    async def recognize(self, image: bytes) -> OCRResult:
        raise NotImplementedError


class TesseractOCRProvider(OCRProvider):
    def __init__(self, lang: str = "eng", min_confidence: float = 0.0):
        self.lang = lang
        self.min_confidence = min_confidence

    def _recognize_sync(self, image: bytes) -> OCRResult:
        with Image.open(io.BytesIO(image)) as img:
            width, height = img.size
            data = pytesseract.image_to_data(img, lang=self.lang, output_type=pytesseract.Output.DICT)

        tokens = []
        for i, text in enumerate(data["text"]):
            confidence = float(data["conf"][i])
            if not text.strip() or confidence < max(self.min_confidence, 0):
                continue
            tokens.append(OCRToken(
                text=text.strip(),
                confidence=confidence,
                x=int(data["left"][i]),
                y=int(data["top"][i]),
                width=int(data["width"][i]),
                height=int(data["height"][i]),
            ))

        lines = group_tokens_into_lines(tokens)
        total_confidence = sum(t.confidence for t in tokens) / len(tokens) if tokens else 0.0
        return OCRResult(lines=lines, image_width=width, image_height=height, total_confidence=total_confidence)

    async def recognize(self, image: bytes) -> OCRResult:
        return await asyncio.to_thread(self._recognize_sync, image)


async def run_ocr(provider: OCRProvider, image: bytes) -> CallResult[OCRResult]:
    """OCR as a tagged result; a failure only means the scan proceeds without OCR."""
    try:
        result = await provider.recognize(image)
    except Exception as e:
        logger.warning(f"OCR failed, continuing without OCR context: {e}")
        return CallResult.failure(f"OCR failed: {e}")
    logger.info(f"OCR found {len(result.lines)} lines (avg confidence {result.total_confidence:.1f}%)")
    return CallResult.success(result)
