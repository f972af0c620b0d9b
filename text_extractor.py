"""Text extraction from pump display snapshots.

The captured JPEG is cropped to the display region, run through an ordered,
individually switchable preprocessing pipeline and handed to the configured
OCR backends in priority order. The next backend is only tried when the
previous one fails outright; a low-confidence answer is a valid answer.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np
import requests

from monitor_log import log
from pump_models import ExtractionError, OcrBackendKind, QualityMetrics, RawExtraction

try:
    import pytesseract
except ImportError:  # pragma: no cover - optional OCR engine
    pytesseract = None


class BackendTimeout(Exception):
    pass


class BackendUnavailable(Exception):
    pass


class TransientBackendError(Exception):
    pass


# ============================================================================
# IMAGE HANDLING
# ============================================================================


def decode_image(image_bytes):
    """Decode JPEG/PNG bytes into a BGR (or grayscale) array."""
    if not image_bytes:
        raise ExtractionError(ExtractionError.INVALID_IMAGE, "empty image buffer")

    buffer = np.frombuffer(image_bytes, dtype=np.uint8)
    image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    if image is None or image.size == 0:
        raise ExtractionError(ExtractionError.INVALID_IMAGE, "image could not be decoded")
    return image


def encode_png(image):
    ok, encoded = cv2.imencode(".png", image)
    if not ok:
        raise ExtractionError(ExtractionError.INVALID_IMAGE, "preprocessed image could not be encoded")
    return encoded.tobytes()


def _clamp_region(region, width, height):
    """Ensure a region stays inside the image bounds."""
    if not region:
        return None

    try:
        x, y, w, h = (int(value) for value in region)
    except (TypeError, ValueError):
        return None

    if w <= 0 or h <= 0 or width <= 0 or height <= 0:
        return None

    x = max(0, min(x, width - 1))
    y = max(0, min(y, height - 1))
    w = max(1, min(w, width - x))
    h = max(1, min(h, height - y))
    return (x, y, w, h)


def roi_to_pixels(roi, width, height):
    """Convert percentage ROI settings into a pixel rectangle."""
    region = (
        width * float(roi["x"]),
        height * float(roi["y"]),
        width * float(roi["width"]),
        height * float(roi["height"]),
    )
    return _clamp_region(region, width, height)


def _to_gray(image):
    if image.ndim == 3:
        return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    return image


def measure_quality(image):
    """Brightness (0-255) plus contrast, sharpness and noise scaled to 0-1."""
    gray = _to_gray(image)
    brightness = float(gray.mean())
    contrast = min(1.0, float(gray.std()) / 128.0)
    sharpness = min(1.0, float(cv2.Laplacian(gray, cv2.CV_64F).var()) / 1000.0)
    denoised = cv2.medianBlur(gray, 3)
    noise = min(1.0, float(np.mean(cv2.absdiff(gray, denoised))) / 32.0)
    return QualityMetrics(
        brightness=round(brightness, 2),
        contrast=round(contrast, 3),
        sharpness=round(sharpness, 3),
        noise=round(noise, 3),
    )


def preprocess(image, options, roi=None):
    """Apply the enabled preprocessing steps in their fixed order.

    Returns (processed_image, applied_step_names, quality_metrics). Quality is
    measured on the cropped display before any enhancement.
    """
    steps = []
    processed = image

    if options["enabled"] and options["crop"] and roi and roi["enabled"]:
        height, width = processed.shape[:2]
        region = roi_to_pixels(roi, width, height)
        if region:
            x, y, w, h = region
            processed = processed[y:y + h, x:x + w]
            steps.append("crop")

    metrics = measure_quality(processed)

    if not options["enabled"]:
        return processed, steps, metrics

    if options["grayscale"]:
        processed = _to_gray(processed)
        steps.append("grayscale")

    factor = float(options["scale_factor"])
    if options["scale"] and factor > 0 and factor != 1.0:
        processed = cv2.resize(processed, None, fx=factor, fy=factor, interpolation=cv2.INTER_CUBIC)
        steps.append(f"scale({factor}x)")

    if options["brightness"] and options["brightness_adjustment"]:
        beta = float(options["brightness_adjustment"]) * 2.55
        processed = cv2.convertScaleAbs(processed, alpha=1.0, beta=beta)
        steps.append(f"brightness({options['brightness_adjustment']})")

    if options["contrast"]:
        alpha = float(options["contrast_factor"])
        processed = cv2.convertScaleAbs(processed, alpha=alpha, beta=128.0 * (1.0 - alpha))
        steps.append(f"contrast({alpha})")

    if options["noise_reduction"]:
        processed = cv2.medianBlur(processed, 3)
        steps.append("noise_reduction")

    if options["threshold"]:
        _, processed = cv2.threshold(
            _to_gray(processed), int(options["binary_threshold"]), 255, cv2.THRESH_BINARY
        )
        steps.append(f"threshold({options['binary_threshold']})")

    return processed, steps, metrics


# ============================================================================
# OCR BACKENDS
# ============================================================================


class TesseractBackend:
    """Offline OCR through the tesseract binary (pytesseract)."""

    kind = OcrBackendKind.TESSERACT

    def __init__(self, options):
        self.language = options["language"]
        self.config = f"--oem {int(options['engine_mode'])} --psm {int(options['page_segmentation_mode'])}"
        if options["char_whitelist"]:
            self.config += f' -c "tessedit_char_whitelist={options["char_whitelist"]}"'
        self.tesseract_cmd = options["tesseract_cmd"]

    def try_extract(self, image_bytes, timeout):
        if pytesseract is None:
            raise BackendUnavailable("pytesseract is not installed")
        if self.tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = self.tesseract_cmd

        image = cv2.imdecode(np.frombuffer(image_bytes, dtype=np.uint8), cv2.IMREAD_UNCHANGED)
        try:
            data = pytesseract.image_to_data(
                image,
                lang=self.language,
                config=self.config,
                timeout=max(1, int(round(timeout))),
                output_type=pytesseract.Output.DICT,
            )
        except pytesseract.TesseractNotFoundError as e:
            raise BackendUnavailable(str(e)) from e
        except pytesseract.TesseractError as e:
            raise TransientBackendError(f"tesseract exited with error: {e}") from e
        except RuntimeError as e:
            if "timeout" in str(e).lower():
                raise BackendTimeout(str(e)) from e
            raise TransientBackendError(str(e)) from e
        except OSError as e:
            raise TransientBackendError(f"could not start tesseract: {e}") from e

        words = []
        confidences = []
        for text, conf in zip(data.get("text", []), data.get("conf", [])):
            word = str(text).strip()
            try:
                score = float(conf)
            except (TypeError, ValueError):
                score = -1.0
            if not word or score < 0:
                continue
            words.append(word)
            confidences.append(score)

        confidence = (sum(confidences) / len(confidences) / 100.0) if confidences else 0.0
        return " ".join(words), confidence


class AzureReadBackend:
    """Cloud OCR through the Azure Image Analysis ``read`` feature."""

    kind = OcrBackendKind.AZURE

    def __init__(self, options, session=None):
        self.endpoint = options["endpoint"]
        self.api_key = options["api_key"]
        self.api_version = options["api_version"]
        self.language = options["language"]
        self.session = session or requests.Session()

    def try_extract(self, image_bytes, timeout):
        if not self.endpoint or not self.api_key:
            raise BackendUnavailable("Azure OCR endpoint or key not configured")

        url = f"{self.endpoint.rstrip('/')}/computervision/imageanalysis:analyze"
        try:
            response = self.session.post(
                url,
                params={
                    "api-version": self.api_version,
                    "features": "read",
                    "language": self.language,
                },
                headers={
                    "Ocp-Apim-Subscription-Key": self.api_key,
                    "Content-Type": "application/octet-stream",
                },
                data=image_bytes,
                timeout=timeout,
            )
        except requests.Timeout as e:
            raise BackendTimeout(str(e)) from e
        except requests.ConnectionError as e:
            raise TransientBackendError(f"connection failed: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientBackendError(f"HTTP {response.status_code}")
        if response.status_code >= 400:
            raise BackendUnavailable(f"HTTP {response.status_code}: {response.text[:200]}")

        try:
            payload = response.json()
        except ValueError as e:
            raise TransientBackendError(f"invalid JSON response: {e}") from e

        lines = []
        confidences = []
        for block in (payload.get("readResult") or {}).get("blocks", []):
            for line in block.get("lines", []):
                if line.get("text"):
                    lines.append(line["text"])
                for word in line.get("words", []):
                    if word.get("confidence") is not None:
                        confidences.append(float(word["confidence"]))

        confidence = sum(confidences) / len(confidences) if confidences else 0.0
        return " ".join(lines), confidence


BACKEND_TYPES = {
    OcrBackendKind.TESSERACT: TesseractBackend,
    OcrBackendKind.AZURE: AzureReadBackend,
}


def build_backend(kind, ocr_settings):
    return BACKEND_TYPES[kind](ocr_settings[kind.value])


def backend_order(names):
    """Translate configured backend names into kinds, skipping unknown ones."""
    kinds = []
    for name in names:
        try:
            kind = OcrBackendKind(str(name).lower())
        except ValueError:
            log(f"OCR: ignoring unknown backend '{name}'")
            continue
        if kind not in kinds:
            kinds.append(kind)
    return kinds


# ============================================================================
# EXTRACTOR
# ============================================================================


@dataclass
class ExtractionStatistics:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    average_duration_ms: float = 0.0
    average_confidence: float = 0.0

    def record(self, extraction: Optional[RawExtraction]):
        self.total += 1
        if extraction is None:
            self.failed += 1
            return
        self.succeeded += 1
        n = self.succeeded
        self.average_duration_ms += (extraction.duration_ms - self.average_duration_ms) / n
        self.average_confidence += (extraction.confidence - self.average_confidence) / n


class TextExtractor:
    def __init__(self, settings_source, backends=None, sleep=time.sleep, clock=time.monotonic):
        self._settings = settings_source
        self._injected = dict(backends or {})
        self._backends = {}
        self._built_for = None
        self._sleep = sleep
        self._clock = clock
        self.statistics = ExtractionStatistics()

    def _backend(self, kind, settings):
        if kind in self._injected:
            return self._injected[kind]
        if self._built_for is not settings:
            self._backends = {}
            self._built_for = settings
        if kind not in self._backends:
            self._backends[kind] = build_backend(kind, settings["ocr"])
        return self._backends[kind]

    def extract(self, image_bytes, deadline=None):
        """Return a RawExtraction or raise ExtractionError."""
        settings = self._settings.current()
        ocr = settings["ocr"]
        started = self._clock()

        try:
            image = decode_image(image_bytes)
            processed, steps, metrics = preprocess(image, ocr["preprocessing"], settings["roi"])
            payload = encode_png(processed)
        except ExtractionError:
            self.statistics.record(None)
            raise

        kinds = backend_order(ocr["backends"])
        if not kinds:
            self.statistics.record(None)
            raise ExtractionError(ExtractionError.BACKEND_UNAVAILABLE, "no OCR backends configured")

        attempts = 0
        failures = []
        last_error = None
        for index, kind in enumerate(kinds):
            try:
                text, confidence, used = self._run_backend(kind, settings, payload, deadline)
            except ExtractionError as e:
                attempts += getattr(e, "attempts", 1)
                failures.append(f"{kind.value}: {e}")
                last_error = e
                if index + 1 < len(kinds):
                    log(f"OCR: {kind.value} failed ({e}), falling back to {kinds[index + 1].value} "
                        f"reason={e.kind}")
                continue

            attempts += used
            extraction = RawExtraction(
                text=text.strip(),
                confidence=max(0.0, min(1.0, float(confidence))),
                backend=kind,
                duration_ms=int((self._clock() - started) * 1000),
                preprocessing_steps=tuple(steps),
                quality_metrics=metrics,
                attempts=attempts,
                fallback_used=index > 0,
                processed_image=payload,
            )
            self.statistics.record(extraction)
            return extraction

        self.statistics.record(None)
        error = ExtractionError(last_error.kind, "; ".join(failures))
        error.attempts = attempts
        raise error

    def _run_backend(self, kind, settings, payload, deadline):
        ocr = settings["ocr"]
        max_attempts = max(1, int(ocr["max_retry_attempts"]))
        backoff = float(ocr["retry_backoff_seconds"])

        try:
            backend = self._backend(kind, settings)
        except (KeyError, TypeError, ValueError) as e:
            error = ExtractionError(ExtractionError.BACKEND_UNAVAILABLE, f"misconfigured: {e}")
            error.attempts = 0
            raise error from e

        for attempt in range(1, max_attempts + 1):
            timeout = float(ocr["timeout_seconds"])
            if deadline is not None:
                timeout = deadline.cap(timeout)
                if timeout <= 0:
                    error = ExtractionError(ExtractionError.TIMEOUT, "cycle deadline reached")
                    error.attempts = attempt - 1
                    raise error

            try:
                text, confidence = backend.try_extract(payload, timeout)
                return text, confidence, attempt
            except BackendTimeout as e:
                error = ExtractionError(ExtractionError.TIMEOUT, f"timed out after {timeout:.1f}s ({e})")
                error.attempts = attempt
                raise error from e
            except BackendUnavailable as e:
                error = ExtractionError(ExtractionError.BACKEND_UNAVAILABLE, str(e))
                error.attempts = attempt
                raise error from e
            except TransientBackendError as e:
                if attempt >= max_attempts:
                    error = ExtractionError(
                        ExtractionError.BACKEND_UNAVAILABLE,
                        f"failed after {attempt} attempts: {e}",
                    )
                    error.attempts = attempt
                    raise error from e
                delay = backoff * attempt
                if deadline is not None:
                    delay = deadline.cap(delay)
                log(f"OCR: {kind.value} attempt {attempt}/{max_attempts} failed ({e}), "
                    f"retrying in {delay:.1f}s")
                if delay > 0:
                    self._sleep(delay)
