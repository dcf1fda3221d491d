"""Image normalization: decode, fit inside bounds, re-encode, compress"""

import logging
import re
from dataclasses import dataclass, fields, replace
from enum import Enum
from io import BytesIO
from typing import Any, Dict, Mapping, Optional, Tuple

import requests
from PIL import Image, ImageOps, UnidentifiedImageError

from models.errors import DecodeError, EncodeError, InvalidOptionsError, UploadRejectedError

logger = logging.getLogger("AssetProcessor")

PROCESSABLE_MIME_TYPES = frozenset({
    "image/jpeg",
    "image/png",
    "image/webp",
    "image/gif",
    "image/tiff",
    "image/bmp",
})

# Share links that point at a single Drive file; folder links cannot be imported
DRIVE_FILE_PATTERNS = [
    re.compile(r"^https://drive\.google\.com/file/d/([a-zA-Z0-9_-]+)"),
    re.compile(r"^https://drive\.google\.com/open\?id=([a-zA-Z0-9_-]+)"),
    re.compile(r"^https://drive\.google\.com/uc\?.*id=([a-zA-Z0-9_-]+)"),
]
DRIVE_FOLDER_PATTERN = re.compile(r"^https://drive\.google\.com/(drive/)?folders/")

_ALPHA_MODES = ("RGBA", "LA", "PA")
_PNG_NATIVE_MODES = ("1", "L", "LA", "P", "RGB", "RGBA")


class ImageFormat(str, Enum):
    """Output formats supported by the processor"""
    WEBP = "webp"
    JPEG = "jpeg"
    PNG = "png"

    @property
    def codec(self) -> str:
        return self.value.upper()

    @property
    def mime_type(self) -> str:
        return f"image/{self.value}"

    @property
    def extension(self) -> str:
        return "jpg" if self is ImageFormat.JPEG else self.value

    @classmethod
    def from_mime_type(cls, mime_type: str) -> Optional["ImageFormat"]:
        for fmt in cls:
            if fmt.mime_type == mime_type:
                return fmt
        return None


@dataclass(frozen=True)
class ProcessingOptions:
    """Per-call processing options, validated at construction"""
    quality: int = 80
    max_width: int = 1920
    max_height: int = 1080
    format: ImageFormat = ImageFormat.WEBP

    def __post_init__(self):
        try:
            fmt = ImageFormat(self.format)
        except ValueError:
            allowed = ", ".join(f.value for f in ImageFormat)
            raise InvalidOptionsError(f"Unsupported format '{self.format}' (expected one of: {allowed})")
        # Frozen dataclass: normalize the string form to the enum member
        object.__setattr__(self, "format", fmt)

        for name in ("quality", "max_width", "max_height"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidOptionsError(f"{name} must be an integer, got {value!r}")
        if not 1 <= self.quality <= 100:
            raise InvalidOptionsError(f"quality must be within [1, 100], got {self.quality}")
        if self.max_width <= 0:
            raise InvalidOptionsError(f"max_width must be positive, got {self.max_width}")
        if self.max_height <= 0:
            raise InvalidOptionsError(f"max_height must be positive, got {self.max_height}")

    @classmethod
    def from_mapping(cls, values: Optional[Mapping[str, Any]] = None) -> "ProcessingOptions":
        """Build options from a plain dict, rejecting unknown keys"""
        values = dict(values or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise InvalidOptionsError(f"Unknown processing option(s): {unknown}")
        return cls(**values)

    def with_overrides(self, **overrides: Any) -> "ProcessingOptions":
        """Return a copy with the non-None overrides applied"""
        changes = {k: v for k, v in overrides.items() if v is not None}
        unknown = sorted(set(changes) - {f.name for f in fields(self)})
        if unknown:
            raise InvalidOptionsError(f"Unknown processing option(s): {unknown}")
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "quality": self.quality,
            "max_width": self.max_width,
            "max_height": self.max_height,
            "format": self.format.value,
        }


def is_processable_image(mime_type: Optional[str]) -> bool:
    """Check whether the declared MIME type is an image the processor accepts"""
    if not mime_type:
        return False
    return mime_type.split(";")[0].strip().lower() in PROCESSABLE_MIME_TYPES


def format_file_size(size_in_bytes: int) -> str:
    """Human-readable size for log lines"""
    if size_in_bytes < 1024:
        return f"{size_in_bytes} B"
    if size_in_bytes < 1024 * 1024:
        return f"{size_in_bytes / 1024:.2f} KB"
    return f"{size_in_bytes / (1024 * 1024):.2f} MB"


def get_image_metadata(image_bytes: bytes) -> Dict[str, Any]:
    """Extract width, height, format from image bytes"""
    try:
        with Image.open(BytesIO(image_bytes)) as img:
            return {
                "width": img.width,
                "height": img.height,
                "format": img.format
            }
    except (UnidentifiedImageError, OSError, ValueError) as e:
        logger.warning(f"Failed to extract image metadata: {e}")
        return {"width": None, "height": None, "format": None}


def fit_within(size: Tuple[int, int], max_width: int, max_height: int) -> Tuple[int, int]:
    """Largest size that fits inside the bounds, keeping aspect ratio, never enlarging"""
    width, height = size
    if width <= max_width and height <= max_height:
        return width, height
    scale = min(max_width / width, max_height / height)
    return max(1, round(width * scale)), max(1, round(height * scale))


def _has_alpha(img: Image.Image) -> bool:
    return img.mode in _ALPHA_MODES or (img.mode == "P" and "transparency" in img.info)


def _prepare_mode(img: Image.Image, fmt: ImageFormat) -> Image.Image:
    """Convert the pixel buffer to a mode the target codec accepts"""
    if fmt is ImageFormat.JPEG:
        if _has_alpha(img):
            # Create white background for transparency
            rgba = img.convert("RGBA")
            background = Image.new("RGB", rgba.size, (255, 255, 255))
            background.paste(rgba, mask=rgba.split()[-1])
            return background
        if img.mode not in ("RGB", "L"):
            return img.convert("RGB")
        return img

    if fmt is ImageFormat.WEBP:
        if img.mode in ("RGB", "RGBA"):
            return img
        return img.convert("RGBA" if _has_alpha(img) else "RGB")

    if img.mode in _PNG_NATIVE_MODES:
        return img
    return img.convert("RGBA" if _has_alpha(img) else "RGB")


def _decode(raw_bytes: bytes) -> Image.Image:
    if not raw_bytes:
        raise DecodeError("Empty image payload")
    try:
        with Image.open(BytesIO(raw_bytes)) as loaded:
            loaded.load()
            # Apply EXIF orientation correction (returns new Image object)
            return ImageOps.exif_transpose(loaded)
    except Image.DecompressionBombError as e:
        raise DecodeError(f"Image too large to decode safely: {e}") from e
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
        raise DecodeError(f"Cannot decode image: {e}") from e


def process_image(raw_bytes: bytes, options: Optional[ProcessingOptions] = None) -> bytes:
    """Normalize an uploaded image.

    Decodes the payload, downsizes it to fit inside ``max_width`` x ``max_height``
    (aspect ratio kept, smaller images are never enlarged) and re-encodes it in
    ``options.format`` at ``options.quality``. PNG output uses maximum lossless
    compression effort. Metadata is not carried over, so identical input and
    options always produce identical bytes.

    Args:
        raw_bytes: Encoded source image (left untouched)
        options: Processing options (defaults when None)

    Returns:
        Encoded image bytes in the requested format

    Raises:
        DecodeError: If the payload is empty or not a decodable image
        EncodeError: If the target codec rejects the pixel buffer
    """
    options = options or ProcessingOptions()
    img = _decode(bytes(raw_bytes))
    src_w, src_h = img.size

    target = fit_within(img.size, options.max_width, options.max_height)
    if target != img.size:
        img = img.resize(target, Image.Resampling.LANCZOS)

    img = _prepare_mode(img, options.format)

    save_kwargs: Dict[str, Any] = {"format": options.format.codec}
    if options.format is ImageFormat.WEBP:
        save_kwargs.update(quality=options.quality, method=6)
    elif options.format is ImageFormat.JPEG:
        save_kwargs.update(quality=options.quality, optimize=True)
    else:
        save_kwargs.update(optimize=True, compress_level=9)

    output = BytesIO()
    try:
        img.save(output, **save_kwargs)
    except (OSError, ValueError, KeyError) as e:
        raise EncodeError(
            f"{options.format.codec} encoder rejected {img.mode} image {img.size[0]}x{img.size[1]}: {e}"
        ) from e

    processed = output.getvalue()
    logger.debug(
        f"Processed image: src={format_file_size(len(raw_bytes))} src_dims={src_w}x{src_h} "
        f"out_dims={img.size[0]}x{img.size[1]} format={options.format.value} "
        f"quality={options.quality} out={format_file_size(len(processed))}"
    )
    return processed


def normalize_drive_url(url: str) -> str:
    """Turn a Google Drive share link into a direct-download URL.

    Other URLs are returned unchanged.

    Raises:
        UploadRejectedError: If the link points at a Drive folder
    """
    if DRIVE_FOLDER_PATTERN.match(url):
        raise UploadRejectedError(f"Drive folder links cannot be imported: {url}")
    for pattern in DRIVE_FILE_PATTERNS:
        match = pattern.match(url)
        if match:
            return f"https://drive.google.com/uc?export=download&id={match.group(1)}"
    return url


class RemoteAssetFetcher:
    """Downloads source images over HTTP with a caller-owned session"""

    def __init__(self, session: requests.Session, timeout: int = 30, max_bytes: Optional[int] = None):
        self.session = session
        self.timeout = timeout
        self.max_bytes = max_bytes

    def fetch(self, url: str) -> Tuple[bytes, str]:
        """Fetch asset bytes and the declared MIME type.

        Raises:
            requests.RequestException: On connection or HTTP errors
            UploadRejectedError: If the body exceeds ``max_bytes``
        """
        source_url = normalize_drive_url(url)
        try:
            response = self.session.get(source_url, timeout=self.timeout, stream=True)
            response.raise_for_status()
            chunks = []
            received = 0
            for chunk in response.iter_content(chunk_size=64 * 1024):
                received += len(chunk)
                if self.max_bytes is not None and received > self.max_bytes:
                    response.close()
                    raise UploadRejectedError(
                        f"Remote asset exceeds {format_file_size(self.max_bytes)}: {url}"
                    )
                chunks.append(chunk)
        except requests.RequestException as e:
            logger.error(f"Failed to fetch asset from {source_url}: {e}")
            raise

        content_type = response.headers.get("Content-Type", "application/octet-stream")
        mime_type = content_type.split(";")[0].strip().lower()
        logger.info(f"Fetched remote asset {source_url} ({format_file_size(received)}, {mime_type})")
        return b"".join(chunks), mime_type
