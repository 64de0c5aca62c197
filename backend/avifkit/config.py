"""Application configuration. Loads from environment and .env file."""
import logging
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional
from urllib.parse import quote_plus

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
# Load .env from cwd, then backend/.env, then project root .env
load_dotenv()
load_dotenv(BASE_DIR / ".env")
load_dotenv(BASE_DIR.parent / ".env")

# Content roots: filesystem directory and the public URL it is served under
UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR", str(BASE_DIR / "uploads")))
UPLOAD_URL = os.getenv("UPLOAD_URL", "http://localhost:8000/uploads").rstrip("/")
THEME_DIR = Path(os.getenv("THEME_DIR", str(BASE_DIR / "theme")))
THEME_URL = os.getenv("THEME_URL", "http://localhost:8000/theme").rstrip("/")

# Upload endpoint limit (MB)
MAX_UPLOAD_SIZE_BYTES = int(os.getenv("MAX_UPLOAD_SIZE_MB", "50")) * 1024 * 1024


def content_roots() -> list[tuple[Path, str]]:
    """(directory, public base URL) pairs, theme assets first."""
    return [(THEME_DIR, THEME_URL), (UPLOAD_DIR, UPLOAD_URL)]


# Source containers the engine will try to convert
SOURCE_MIME_TYPES = ("image/jpeg", "image/png", "image/gif")
OUTPUT_FORMATS = ("avif", "webp")

# External tool wall-clock bound (seconds)
EXEC_TIMEOUT = int(os.getenv("EXEC_TIMEOUT", "120"))

# Capability verdicts are trusted for a week
CAPABILITY_CACHE_SECONDS = 7 * 24 * 60 * 60

# Database – SQLite by default. For MySQL use either DATABASE_URL or MYSQL_* vars (password with @ is safe with MYSQL_*).
DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
if not DATABASE_URL:
    mysql_host = os.getenv("MYSQL_HOST", "").strip()
    mysql_user = os.getenv("MYSQL_USER", "").strip()
    mysql_password = os.getenv("MYSQL_PASSWORD", "")
    mysql_database = os.getenv("MYSQL_DATABASE", "").strip()
    if mysql_host and mysql_user and mysql_database:
        mysql_port = os.getenv("MYSQL_PORT", "3306").strip()
        user_enc = quote_plus(mysql_user)
        pass_enc = quote_plus(mysql_password)
        DATABASE_URL = f"mysql+pymysql://{user_enc}:{pass_enc}@{mysql_host}:{mysql_port}/{mysql_database}"
    else:
        db_path = BASE_DIR / "data" / "avifkit.db"
        db_path.parent.mkdir(parents=True, exist_ok=True)
        DATABASE_URL = f"sqlite:///{db_path}"

# CORS: comma-separated origins, e.g. "http://localhost:5173,http://127.0.0.1:5173"
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]

# Server (for uvicorn)
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("avifkit")


# Conversion settings ------------------------------------------------------

DEFAULT_AVIF_QUALITY = 80
DEFAULT_WEBP_QUALITY = 82
DEFAULT_BREAKPOINT_WIDTHS = (640, 768, 1024, 1280, 1600, 1920, 2560)

# (key, default, low, high)
_BOUNDED_INTS = (
    ("avif_quality", DEFAULT_AVIF_QUALITY, 1, 100),
    ("webp_quality", DEFAULT_WEBP_QUALITY, 1, 100),
    ("max_dimension", 4096, 1000, 8192),
    ("max_file_size_mb", 50, 1, 500),
    ("stale_lock_timeout", 300, 60, 3600),
)

_BOOL_KEYS = {
    "only_if_smaller": True,
    "enable_smart_quality": False,
    "generate_avif": True,
    "generate_webp": True,
    "pregenerate_breakpoints": False,
}


@dataclass(frozen=True)
class SmartQualityRule:
    max_dimension: float
    avif: int
    webp: int

    def quality_for(self, fmt: str) -> int:
        return self.avif if fmt == "avif" else self.webp


DEFAULT_SMART_QUALITY_RULES = (
    SmartQualityRule(1000, 85, 90),
    SmartQualityRule(2000, 80, 85),
    SmartQualityRule(math.inf, 75, 80),
)


@dataclass(frozen=True)
class Settings:
    """Read-only snapshot of conversion settings for one operation."""

    avif_quality: int = DEFAULT_AVIF_QUALITY
    webp_quality: int = DEFAULT_WEBP_QUALITY
    max_dimension: int = 4096
    max_file_size_mb: int = 50
    only_if_smaller: bool = True
    stale_lock_timeout: int = 300
    enable_smart_quality: bool = False
    smart_quality_rules: tuple[SmartQualityRule, ...] = DEFAULT_SMART_QUALITY_RULES
    generate_avif: bool = True
    generate_webp: bool = True
    pregenerate_breakpoints: bool = False
    breakpoint_widths: tuple[int, ...] = field(default=DEFAULT_BREAKPOINT_WIDTHS)

    def default_quality(self, fmt: str) -> int:
        return self.avif_quality if fmt == "avif" else self.webp_quality

    def smart_quality(self, fmt: str, largest_side: int) -> int:
        """First rule covering the image's larger side, or the format default."""
        for rule in self.smart_quality_rules:
            if largest_side <= rule.max_dimension:
                return rule.quality_for(fmt)
        return self.default_quality(fmt)

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024


def _clamp_int(value: Any, default: int, low: int, high: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return max(low, min(high, number))


def _to_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off", ""):
        return False
    return default


def parse_widths(value: Any) -> tuple[int, ...]:
    """Parse "640,1024" (or an iterable of ints) into positive unique widths."""
    if value is None:
        return DEFAULT_BREAKPOINT_WIDTHS
    parts = value.split(",") if isinstance(value, str) else list(value)
    widths: list[int] = []
    for part in parts:
        try:
            width = int(str(part).strip())
        except ValueError:
            continue
        if width > 0 and width not in widths:
            widths.append(width)
    return tuple(widths)


def _parse_rules(value: Any) -> tuple[SmartQualityRule, ...]:
    if not value:
        return DEFAULT_SMART_QUALITY_RULES
    rules: list[SmartQualityRule] = []
    for raw in value:
        if isinstance(raw, SmartQualityRule):
            rules.append(raw)
            continue
        try:
            if isinstance(raw, Mapping):
                max_dim, avif, webp = raw["max_dimension"], raw["avif"], raw["webp"]
            else:
                max_dim, avif, webp = raw
            limit = math.inf if max_dim is None else float(max_dim)
            rules.append(SmartQualityRule(limit, _clamp_int(avif, DEFAULT_AVIF_QUALITY, 1, 100),
                                          _clamp_int(webp, DEFAULT_WEBP_QUALITY, 1, 100)))
        except (KeyError, TypeError, ValueError):
            logger.warning("Ignoring malformed smart quality rule: %r", raw)
    if not rules:
        return DEFAULT_SMART_QUALITY_RULES
    rules.sort(key=lambda r: r.max_dimension)
    if rules[-1].max_dimension != math.inf:
        last = rules[-1]
        rules.append(SmartQualityRule(math.inf, last.avif, last.webp))
    return tuple(rules)


def merge_settings(saved: Optional[Mapping[str, Any]] = None) -> Settings:
    """Merge saved values over defaults, clamping each to its allowed range."""
    saved = dict(saved or {})
    values: dict[str, Any] = {}
    for key, default, low, high in _BOUNDED_INTS:
        values[key] = _clamp_int(saved.get(key, default), default, low, high)
    for key, default in _BOOL_KEYS.items():
        values[key] = _to_bool(saved.get(key), default)
    values["smart_quality_rules"] = _parse_rules(saved.get("smart_quality_rules"))
    values["breakpoint_widths"] = parse_widths(saved.get("breakpoint_widths"))
    return Settings(**values)


_ENV_KEYS = {
    "avif_quality": "AVIFKIT_AVIF_QUALITY",
    "webp_quality": "AVIFKIT_WEBP_QUALITY",
    "max_dimension": "AVIFKIT_MAX_DIMENSION",
    "max_file_size_mb": "AVIFKIT_MAX_FILE_SIZE_MB",
    "only_if_smaller": "AVIFKIT_ONLY_IF_SMALLER",
    "stale_lock_timeout": "AVIFKIT_STALE_LOCK_TIMEOUT",
    "enable_smart_quality": "AVIFKIT_SMART_QUALITY",
    "generate_avif": "AVIFKIT_GENERATE_AVIF",
    "generate_webp": "AVIFKIT_GENERATE_WEBP",
    "pregenerate_breakpoints": "AVIFKIT_PREGENERATE_BREAKPOINTS",
    "breakpoint_widths": "AVIFKIT_BREAKPOINT_WIDTHS",
}


def load_settings() -> Settings:
    """Build a settings snapshot from AVIFKIT_* environment variables."""
    saved = {key: os.environ[env] for key, env in _ENV_KEYS.items() if env in os.environ}
    return merge_settings(saved)
