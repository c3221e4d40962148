"""Codec invoker: encode raw image bytes with Pillow."""
import io
import logging
import time
from typing import Protocol

from PIL import Image, UnidentifiedImageError

from transcoder.config import WEBP_EFFORT
from transcoder.conversion.models import ConversionOptions, OutputFormat, ResizeMode
from transcoder.conversion.resize import resize_exact, resize_keep_aspect, resize_to_fit
from transcoder.errors import CodecError, FailureReason

logger = logging.getLogger("transcoder.codec")


class Codec(Protocol):
    def encode(self, data: bytes, options: ConversionOptions) -> bytes:
        """Return encoded bytes or raise CodecError."""
        ...


class PillowCodec:
    """Decodes, resizes and re-encodes one image. Safe to call from worker threads."""

    def __init__(self, webp_effort: int = WEBP_EFFORT):
        self.webp_effort = webp_effort

    def encode(self, data: bytes, options: ConversionOptions) -> bytes:
        started = time.perf_counter()
        try:
            with Image.open(io.BytesIO(data)) as img:
                img.load()
                work = self._prepare_mode(img, options.format)
                work = self._resize(work, options)
                out = io.BytesIO()
                work.save(out, **self._save_kwargs(options))
        except CodecError:
            raise
        except Image.DecompressionBombError as e:
            raise CodecError(FailureReason.DIMENSION_TOO_LARGE, str(e)) from e
        except MemoryError as e:
            raise CodecError(FailureReason.OUT_OF_MEMORY, "Not enough memory to process image") from e
        except UnidentifiedImageError as e:
            raise CodecError(FailureReason.CORRUPT_INPUT, str(e)) from e
        except KeyError as e:
            # Pillow raises KeyError for a format it has no save handler for
            raise CodecError(FailureReason.UNSUPPORTED_FORMAT, f"No encoder for {options.format.value}") from e
        except OSError as e:
            if "encoder" in str(e).lower():
                raise CodecError(FailureReason.UNSUPPORTED_FORMAT, str(e)) from e
            raise CodecError(FailureReason.CORRUPT_INPUT, str(e)) from e
        except (ValueError, SyntaxError) as e:
            raise CodecError(FailureReason.CORRUPT_INPUT, str(e)) from e
        result = out.getvalue()
        logger.debug(
            "Encoded %s bytes -> %s bytes (%s) in %.1fms",
            len(data), len(result), options.format.value, (time.perf_counter() - started) * 1000,
        )
        return result

    @staticmethod
    def _prepare_mode(img: Image.Image, fmt: OutputFormat) -> Image.Image:
        if fmt == OutputFormat.JPEG:
            return img.convert("RGB") if img.mode != "RGB" else img
        if img.mode == "P":
            return img.convert("RGBA" if "transparency" in img.info else "RGB")
        if img.mode not in ("RGB", "RGBA", "L", "LA"):
            return img.convert("RGB")
        return img

    @staticmethod
    def _resize(img: Image.Image, options: ConversionOptions) -> Image.Image:
        tw, th = options.width, options.height
        if tw is None and th is None:
            return img
        if options.resize_mode == ResizeMode.CROP and tw is not None and th is not None:
            return resize_to_fit(img, tw, th)
        if options.maintain_aspect_ratio:
            return resize_keep_aspect(img, target_width=tw, target_height=th)
        return resize_exact(img, target_width=tw, target_height=th)

    def _save_kwargs(self, options: ConversionOptions) -> dict:
        fmt = options.format
        if fmt == OutputFormat.WEBP:
            return {"format": "WEBP", "quality": options.quality, "method": self.webp_effort}
        if fmt == OutputFormat.JPEG:
            return {"format": "JPEG", "quality": options.quality, "optimize": True}
        if fmt == OutputFormat.PNG:
            return {"format": "PNG", "optimize": True}
        if fmt == OutputFormat.AVIF:
            return {"format": "AVIF", "quality": options.quality}
        raise CodecError(FailureReason.UNSUPPORTED_FORMAT, f"Unsupported output format: {fmt}")
