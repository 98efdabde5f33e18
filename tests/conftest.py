"""Shared fixtures for Image Gallery tests."""

from __future__ import annotations

import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import torch
from PIL import Image


# ── Tiny test image helpers ───────────────────────────────────


def _create_test_image(path: Path, width: int = 16, height: int = 16) -> Path:
    """Create a minimal valid image at *path* (format taken from the suffix)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    img = Image.new("RGB", (width, height), color=(128, 128, 128))
    img.save(path)
    return path


@pytest.fixture()
def test_image(tmp_path: Path) -> Path:
    """A single small PNG image in a temp directory."""
    return _create_test_image(tmp_path / "test.png")


@pytest.fixture()
def flat_image_dir(tmp_path: Path) -> Path:
    """Flat directory with 5 PNG images."""
    d = tmp_path / "images"
    d.mkdir()
    for i in range(5):
        _create_test_image(d / f"img_{i:03d}.png")
    return d


@pytest.fixture()
def empty_image_dir(tmp_path: Path) -> Path:
    d = tmp_path / "empty"
    d.mkdir()
    return d


# ── Stub classifiers ──────────────────────────────────────────


class ConstantClassifier:
    """Labels every image with the same string and records what it saw."""

    def __init__(self, label: str = "cat"):
        self.label = label
        self.seen: list[str] = []

    def classify(self, path: str) -> str:
        self.seen.append(path)
        return self.label


class FailingClassifier:
    """Raises for file names in *fail_on*, otherwise returns *label*."""

    def __init__(self, fail_on: set[str], label: str = "cat"):
        self.fail_on = fail_on
        self.label = label

    def classify(self, path: str) -> str:
        if Path(path).name in self.fail_on:
            raise RuntimeError(f"cannot classify {path}")
        return self.label


@pytest.fixture()
def cat_classifier() -> ConstantClassifier:
    return ConstantClassifier("cat")


# ── Fake open_clip ────────────────────────────────────────────

# Text embeddings are one-hot rows, so label i wins when the image
# embedding points along axis i.
EMBED_DIM = 4


def make_fake_open_clip(image_axis: int = 1) -> MagicMock:
    """A stand-in for the open_clip module with a deterministic model."""
    model = MagicMock()
    model.encode_text.side_effect = lambda tokens: torch.eye(EMBED_DIM)[
        : tokens.shape[0]
    ]
    image_emb = torch.zeros(1, EMBED_DIM)
    image_emb[0, image_axis] = 1.0
    model.encode_image.return_value = image_emb

    raw_model = MagicMock()
    raw_model.to.return_value.eval.return_value = model

    fake = MagicMock()
    fake.create_model_and_transforms.return_value = (
        raw_model,
        None,
        lambda img: torch.zeros(3, 8, 8),
    )
    fake.get_tokenizer.return_value = lambda texts: torch.zeros(
        (len(texts), 77), dtype=torch.long
    )
    return fake


@pytest.fixture()
def fake_open_clip():
    fake = make_fake_open_clip()
    with patch.dict(sys.modules, {"open_clip": fake}), patch(
        "image_labeler.get_torch_device", return_value="cpu"
    ):
        yield fake
