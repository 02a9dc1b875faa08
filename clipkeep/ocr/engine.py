# Purpose: extract text from captured clipboard images
# runs two recognition passes and keeps the better one:
#   score = confidence * 0.65 + quality * 0.35
# confidence = mean per-line recognizer confidence
# quality    = share of "sane" characters minus 0.7 x share of mojibake symbols
# a result is thrown away (empty text) only if BOTH confidence < threshold AND quality < 0.55
# decode / recognizer errors raise OcrFailure, the scheduler marks the task failed

import threading
import time
import unicodedata
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

import numpy as np
from loguru import logger
from PIL import Image

from clipkeep.core.context import AppContext
from clipkeep.core.errors import OcrDecodeFailure, OcrEngineFailure

CONFIDENCE_WEIGHT = 0.65
QUALITY_WEIGHT = 0.35
MIN_QUALITY = 0.55
SUSPICIOUS_PENALTY = 0.7

DEFAULT_LANGUAGES = ["en", "zh-Hans"]

# full-width / CJK punctuation that unicode does not always file under P*
EXTRA_ACCEPTABLE = set("，。！？；：、（）《》“”‘’【】·—…「」『』")
# symbols that show up when the recognizer reads garbage with confidence
STRONGLY_SUSPICIOUS = set("†‡÷§ß¤¦¶")

LANGUAGE_ALIASES = {
    "zh-ch": "zh-Hans",
    "zh_cn": "zh-Hans",
    "zh-cn": "zh-Hans",
    "zh": "zh-Hans",
    "zh-tw": "zh-Hant",
    "zh_hk": "zh-Hant",
    "zh-hk": "zh-Hant",
    "en": "en-US",
}


@dataclass(frozen=True)
class RecognizedLine:
    text: str
    confidence: float


@dataclass(frozen=True)
class PassResult:
    text: str
    confidence: float
    quality: float

    @property
    def score(self) -> float:
        return self.confidence * CONFIDENCE_WEIGHT + self.quality * QUALITY_WEIGHT


class Recognizer(Protocol):
    def recognize(self, image: Image.Image, languages: Sequence[str], level: str,
                  upscale: bool = False) -> List[RecognizedLine]: ...


# ===== SCORING =====

def _is_cjk(code_point: int) -> bool:
    return 0x4E00 <= code_point <= 0x9FFF or 0x3400 <= code_point <= 0x4DBF


def _is_acceptable(ch: str) -> bool:
    if ch.isalnum() or ch.isspace() or ch in EXTRA_ACCEPTABLE or _is_cjk(ord(ch)):
        return True
    category = unicodedata.category(ch)
    # combining marks count as part of letters, P* is punctuation
    return category.startswith("M") or category.startswith("P")


def text_quality(text: str) -> float:
    """0..1 sanity score of recognized text, catches confident garbage"""
    trimmed = text.strip()
    if not trimmed:
        return 0.0

    total = len(trimmed)
    acceptable = sum(1 for ch in trimmed if _is_acceptable(ch))
    suspicious = sum(1 for ch in trimmed if ch in STRONGLY_SUSPICIOUS)

    score = acceptable / total - (suspicious / total) * SUSPICIOUS_PENALTY
    return max(0.0, min(1.0, score))


def build_pass_result(lines: Iterable[RecognizedLine]) -> PassResult:
    confidences = []
    texts = []
    for line in lines:
        confidences.append(float(line.confidence))
        stripped = line.text.strip()
        if stripped:
            texts.append(stripped)

    text = "\n".join(texts)
    confidence = sum(confidences) / len(confidences) if confidences else 0.0
    return PassResult(text=text, confidence=confidence, quality=text_quality(text))


def select_best(primary: PassResult, fallback: PassResult) -> PassResult:
    """Higher score wins, ties keep the primary pass"""
    return primary if primary.score >= fallback.score else fallback


def accept(result: PassResult, confidence_threshold: float) -> str:
    """Text to store: empty only when the result is weak on BOTH confidence and quality"""
    if result.confidence < confidence_threshold and result.quality < MIN_QUALITY:
        return ""
    return result.text


def normalize_languages(raw: Iterable[str]) -> List[str]:
    """
    Canonicalize language tags for the recognizer
    zh / zh-cn -> zh-Hans, zh-tw / zh-hk -> zh-Hant, en -> en-US
    duplicates removed, first one wins, empty -> DEFAULT_LANGUAGES
    """
    normalized = []
    for code in raw:
        code = (code or "").strip()
        if not code:
            continue
        normalized.append(LANGUAGE_ALIASES.get(code.lower(), code))

    deduplicated = list(dict.fromkeys(normalized))
    return deduplicated if deduplicated else list(DEFAULT_LANGUAGES)


# ===== EASYOCR =====

# normalized tag -> easyocr language code
EASYOCR_LANGUAGES = {
    "en-us": "en",
    "en": "en",
    "zh-hans": "ch_sim",
    "zh-hant": "ch_tra",
    "ja": "ja",
    "ko": "ko",
}


def to_easyocr_languages(languages: Sequence[str]) -> Tuple[str, ...]:
    codes = []
    for tag in languages:
        key = tag.lower()
        code = EASYOCR_LANGUAGES.get(key, key.replace("_", "-").split("-")[0])
        codes.append(code)

    codes = list(dict.fromkeys(codes))
    # easyocr loads one chinese model at a time, keep whichever was asked for first
    if "ch_sim" in codes and "ch_tra" in codes:
        codes.remove("ch_tra" if codes.index("ch_sim") < codes.index("ch_tra") else "ch_sim")
    return tuple(codes)


class EasyOcrRecognizer:
    """
    Recognizer backed by EasyOCR
    readers are loaded lazily (first OCR task) and kept per language set
    "accurate" uses beam search decoding, "fast" greedy
    """

    def __init__(self, gpu: bool = False):
        self.gpu = gpu
        self._readers: Dict[Tuple[str, ...], object] = {}
        self._lock = threading.Lock()

    def get_reader(self, languages: Tuple[str, ...]):
        with self._lock:
            reader = self._readers.get(languages)
            if reader is None:
                import easyocr
                logger.info(f"[OCR] Loading EasyOCR for {list(languages)} (first time only)...")
                reader = easyocr.Reader(list(languages), gpu=self.gpu)
                self._readers[languages] = reader
                logger.info("[OCR] EasyOCR loaded successfully")
            return reader

    def recognize(self, image: Image.Image, languages: Sequence[str], level: str,
                  upscale: bool = False) -> List[RecognizedLine]:
        reader = self.get_reader(to_easyocr_languages(languages))
        results = reader.readtext(
            np.array(image),
            detail=1,
            paragraph=False,
            decoder="greedy" if level == "fast" else "beamsearch",
            mag_ratio=1.5 if upscale else 1.0,
        )
        # EasyOCR returns list of (bbox, text, confidence)
        return [RecognizedLine(text=str(text), confidence=float(conf)) for _, text, conf in results]


class OcrEngine:
    def __init__(self, context: AppContext, recognizer: Optional[Recognizer] = None):
        self.context = context
        self.recognizer = recognizer or EasyOcrRecognizer()

    def load_image(self, image_path: str) -> Image.Image:
        """image_path is relative to the clipboard data dir"""
        absolute_path = self.context.image_file(image_path)
        try:
            with Image.open(absolute_path) as image:
                image.load()
                return image.convert("RGB")
        except (OSError, ValueError, Image.DecompressionBombError) as e:
            raise OcrDecodeFailure(f"could not decode image {image_path}: {e}") from e

    def run_pass(self, image: Image.Image, languages: List[str], level: str, upscale: bool) -> PassResult:
        try:
            lines = self.recognizer.recognize(image, languages, level, upscale=upscale)
        except Exception as e:
            raise OcrEngineFailure(f"recognizer failed: {e}") from e
        return build_pass_result(lines)

    def recognize_image(self, image: Image.Image) -> str:
        settings = self.context.settings.ocr
        languages = normalize_languages(settings.languages)
        start = time.perf_counter()

        primary = self.run_pass(image, languages, settings.recognition_level, upscale=False)
        # fallback pass for short mixed-script headlines where the first pass outputs garbage
        fallback = self.run_pass(image, languages, "accurate", upscale=True)

        best = select_best(primary, fallback)
        text = accept(best, settings.confidence_threshold)

        duration = time.perf_counter() - start
        logger.debug(
            f"[OCR] finished in {duration:.3f}s score={best.score:.3f} "
            f"conf={best.confidence:.3f} quality={best.quality:.3f} accepted={bool(text)}"
        )
        return text

    def recognize_file(self, image_path: str) -> str:
        return self.recognize_image(self.load_image(image_path))
