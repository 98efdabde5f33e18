"""
Configuration for the Image Gallery.

Settings live in a small YAML file.  Lookup order:
    1. explicit path passed to load_config()
    2. $GALLERY_CONFIG
    3. default.yaml next to this module

A missing file is not an error -- the defaults below are used.

A relative image_dir read from a file is resolved against that file's
directory, so the bundled default.yaml finds public/images beside this
module whatever the working directory.  The built-in default (no file)
and command-line overrides stay relative to the working directory.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml

CONFIG_ENV_VAR = "GALLERY_CONFIG"
DEFAULT_CONFIG_PATH = Path(__file__).parent / "default.yaml"

# Zero-shot vocabulary used when the config does not name one.
DEFAULT_LABELS = [
    "cat",
    "dog",
    "bird",
    "horse",
    "fish",
    "flower",
    "tree",
    "mountain",
    "beach",
    "city street",
    "building",
    "car",
    "bicycle",
    "airplane",
    "boat",
    "food",
    "person",
    "group of people",
    "document",
    "screenshot",
]


@dataclass
class GalleryConfig:
    image_dir: str = "public/images"
    url_prefix: str = "images"  # public URL segment the images are served under
    classifier_enabled: bool = True
    clip_model: str = "ViT-B-32"
    clip_pretrained: str = "laion2b_s34b_b79k"
    labels: list[str] = field(default_factory=lambda: list(DEFAULT_LABELS))
    host: str = "127.0.0.1"
    port: int = 8000

    @property
    def image_path(self) -> Path:
        return Path(self.image_dir)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GalleryConfig:
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(unknown)}")
        cfg = cls(**data)
        cfg.validate()
        return cfg

    def validate(self) -> None:
        """Normalise url_prefix and reject settings the gallery cannot serve."""
        self.url_prefix = self.url_prefix.strip("/")
        if not self.url_prefix:
            raise ValueError("url_prefix must not be empty")
        if self.classifier_enabled and not self.labels:
            raise ValueError("labels must not be empty when the classifier is enabled")


def resolve_config_path(config_path: Optional[Path] = None) -> Path:
    if config_path is not None:
        return Path(config_path)
    env = os.environ.get(CONFIG_ENV_VAR)
    if env:
        return Path(env)
    return DEFAULT_CONFIG_PATH


def load_config(config_path: Optional[Path] = None) -> GalleryConfig:
    """Load gallery settings, falling back to defaults if the file is absent."""
    path = resolve_config_path(config_path)
    if not path.exists():
        return GalleryConfig()

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ValueError(f"Cannot read config {path}: {e}") from e

    if data is None:
        return GalleryConfig()
    if not isinstance(data, dict):
        raise ValueError(f"Config {path} must be a mapping, got {type(data).__name__}")
    cfg = GalleryConfig.from_dict(data)
    if "image_dir" in data and not cfg.image_path.is_absolute():
        cfg.image_dir = str(path.parent / cfg.image_dir)
    return cfg
