import json
from dataclasses import dataclass
from pathlib import Path

from tally.errors import ConfigValidationError

CONFIG_DIR = Path.home() / ".config" / "tally"
SETTINGS_PATH = CONFIG_DIR / "settings.json"

DEFAULT_DATA_DIR = Path.home() / "Documents" / "tally"

DEFAULTS = {
    "data_dir": str(DEFAULT_DATA_DIR),
    "owner_id": 1,
    "log_level": "WARNING",
    "max_file_size": 10 * 1024 * 1024,
    "preview_rows": 100,
    "sample_rows": 10,
    "suggestion_threshold": 0.3,
    "max_suggestions": 5,
}

SUPPORTED_EXTENSIONS = ("csv", "xls", "xlsx", "qif")


@dataclass(frozen=True)
class ImportConfig:
    max_file_size: int = 10 * 1024 * 1024
    preview_rows: int = 100
    sample_rows: int = 10
    supported_extensions: tuple[str, ...] = SUPPORTED_EXTENSIONS

    def validate(self) -> "ImportConfig":
        if self.max_file_size <= 0:
            raise ConfigValidationError("max_file_size must be positive")
        if self.preview_rows <= 0:
            raise ConfigValidationError("preview_rows must be positive")
        if not 0 < self.sample_rows <= 10:
            raise ConfigValidationError("sample_rows must be between 1 and 10")
        if self.sample_rows > self.preview_rows:
            raise ConfigValidationError("sample_rows cannot exceed preview_rows")
        return self


@dataclass(frozen=True)
class MatchConfig:
    threshold: float = 0.3
    max_suggestions: int = 5

    def validate(self) -> "MatchConfig":
        if not 0.0 <= self.threshold <= 1.0:
            raise ConfigValidationError("suggestion_threshold must be within [0, 1]")
        if self.max_suggestions <= 0:
            raise ConfigValidationError("max_suggestions must be positive")
        return self


def load_settings() -> dict:
    if SETTINGS_PATH.exists():
        with open(SETTINGS_PATH) as f:
            saved = json.loads(f.read())
        return {**DEFAULTS, **saved}
    return dict(DEFAULTS)


def save_settings(settings: dict) -> None:
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    with open(SETTINGS_PATH, "w") as f:
        f.write(json.dumps(settings, indent=2) + "\n")


def get_data_dir() -> Path:
    return Path(load_settings()["data_dir"])


def load_import_config(settings: dict | None = None) -> ImportConfig:
    settings = settings if settings is not None else load_settings()
    try:
        config = ImportConfig(
            max_file_size=int(settings["max_file_size"]),
            preview_rows=int(settings["preview_rows"]),
            sample_rows=int(settings["sample_rows"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigValidationError(f"Invalid import settings: {e}") from e
    return config.validate()


def load_match_config(settings: dict | None = None) -> MatchConfig:
    settings = settings if settings is not None else load_settings()
    try:
        config = MatchConfig(
            threshold=float(settings["suggestion_threshold"]),
            max_suggestions=int(settings["max_suggestions"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigValidationError(f"Invalid matching settings: {e}") from e
    return config.validate()
