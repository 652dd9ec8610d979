# ladderOCR/config.py
from dataclasses import dataclass, field, asdict, fields, replace
from pathlib import Path
from typing import Dict, Any, Optional
from multiprocessing import cpu_count

from .presets import (
    CUSTOM_PRESET_ID,
    DEFAULT_PRESET_ID,
    ImageOptions,
    Preset,
    get_preset,
)

KNOBS = tuple(f.name for f in fields(ImageOptions))


def _hardware_hint() -> int:
    try:
        return cpu_count()
    except NotImplementedError:
        return 4


@dataclass(frozen=True)
class ActiveSettings:
    """
    The active preset plus the image options currently in force.

    Selecting a preset replaces both at once. Overriding any knob demotes the
    selection to the custom preset while keeping the current options.
    """
    preset: Preset
    options: ImageOptions

    @property
    def preset_id(self) -> str:
        return self.preset.id

    @classmethod
    def from_preset(cls, preset_id: str = DEFAULT_PRESET_ID) -> "ActiveSettings":
        preset = get_preset(preset_id)
        return cls(preset=preset, options=preset.defaults)

    def select_preset(self, preset_id: str) -> "ActiveSettings":
        return ActiveSettings.from_preset(preset_id)

    def override(self, **knobs: Any) -> "ActiveSettings":
        unknown = sorted(set(knobs) - set(KNOBS))
        if unknown:
            raise ValueError(f"Unknown option(s), {unknown}. Known options, {list(KNOBS)}")
        if not knobs:
            return self
        if "languages" in knobs:
            knobs["languages"] = _normalize_languages(knobs["languages"])
        return ActiveSettings(
            preset=get_preset(CUSTOM_PRESET_ID),
            options=replace(self.options, **knobs),
        )


def _normalize_languages(value) -> tuple:
    if isinstance(value, str):
        parts = value.replace(",", "+").split("+")
    else:
        parts = list(value or [])
    langs = tuple(p.strip() for p in parts if p and p.strip())
    return langs or ("eng",)


@dataclass
class OCRConfig:
    """Configuration for a ladderOCR processing run."""
    preset: str = DEFAULT_PRESET_ID
    overrides: Dict[str, Any] = field(default_factory=dict)

    ocr_backend: str = "ladderocr.engines.tesseract_backend.TesseractOCREngine"
    ocr_backend_kwargs: Dict[str, Any] = field(default_factory=dict)
    tessdata_dir: Optional[Path] = None

    hardware_concurrency: int = field(default_factory=_hardware_hint)
    render_scale: float = 2.0

    # post-processing
    locale_cleanup: bool = True
    word_spacing: bool = False
    auto_wrap: bool = True
    wrap_width: int = 60

    output_path: Optional[Path] = None
    error_log_path: Optional[Path] = None
    export_txt: bool = False

    show_progress: bool = True
    log_queue: Optional[Any] = None

    def settings(self) -> ActiveSettings:
        active = ActiveSettings.from_preset(self.preset)
        return active.override(**self.overrides) if self.overrides else active

    def resource_paths(self) -> Dict[str, str]:
        if self.tessdata_dir:
            return {"tessdata_dir": str(self.tessdata_dir)}
        return {}

    def to_dict(self):
        """Converts config to a plain dictionary (paths as strings, no queues)."""
        d = asdict(replace(self, log_queue=None))
        for key, value in d.items():
            if isinstance(value, Path):
                d[key] = str(value)
        return d

    @classmethod
    def from_dict(cls, config_dict: dict):
        d = dict(config_dict)

        for key in ["output_path", "error_log_path", "tessdata_dir"]:
            if key in d and isinstance(d[key], str):
                d[key] = Path(d[key])

        # allow explicit None to mean use default
        for key in ["preset", "hardware_concurrency", "render_scale", "wrap_width"]:
            if d.get(key) is None:
                d.pop(key, None)

        known = {f.name for f in fields(cls)}
        extra = sorted(set(d) - known)
        if extra:
            raise ValueError(f"Unknown config keys, {extra}")

        cfg = cls(**d)
        # fail early on bad preset ids or knob names
        cfg.settings()
        return cfg
