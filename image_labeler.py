#!/usr/bin/env python3
"""
Image Labeler -- list the images in a folder and title each one.

Titles come from a zero-shot OpenCLIP classifier over a small label
vocabulary.  When no classifier is available (disabled, or the model
failed to load) every image is titled with its public path instead.

Usage:
    python image_labeler.py --input public/images
    python image_labeler.py --input public/images --output report.csv
    python image_labeler.py --input public/images --labels "cat,dog,car"

Web UI:
    python server.py
"""

from __future__ import annotations

import argparse
import csv
import logging
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol, Sequence

import numpy as np
import torch
from PIL import Image
from tqdm import tqdm

from gallery_config import GalleryConfig, load_config

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Device helper
# ---------------------------------------------------------------------------


def get_torch_device() -> str:
    """Pick the best available PyTorch device."""
    if torch.cuda.is_available():
        return "cuda"
    if hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
        return "mps"
    return "cpu"


# ---------------------------------------------------------------------------
# Classifier capability
# ---------------------------------------------------------------------------


class Classifier(Protocol):
    def classify(self, path: str) -> str: ...


def cosine_sim(a: np.ndarray, b: np.ndarray) -> float:
    return float(np.dot(a, b) / (np.linalg.norm(a) * np.linalg.norm(b) + 1e-9))


def best_label(
    image_emb: np.ndarray, text_embs: np.ndarray, labels: Sequence[str]
) -> tuple[str, float]:
    """Return the (label, similarity) whose text embedding is closest to *image_emb*."""
    if len(labels) == 0:
        raise ValueError("Label vocabulary is empty")
    text_embs = np.atleast_2d(text_embs)
    if text_embs.shape[0] != len(labels):
        raise ValueError(
            f"Got {text_embs.shape[0]} text embeddings for {len(labels)} labels"
        )
    scores = [cosine_sim(image_emb, t) for t in text_embs]
    idx = int(np.argmax(scores))
    return labels[idx], scores[idx]


class CLIPLabeler:
    """Zero-shot image labeller on top of open_clip."""

    def __init__(
        self,
        labels: Sequence[str],
        model_name: str = "ViT-B-32",
        pretrained: str = "laion2b_s34b_b79k",
        prompt: str = "a photo of a {}",
    ):
        import open_clip

        if not labels:
            raise ValueError("CLIPLabeler needs at least one label")
        self.labels = list(labels)
        self.device = get_torch_device()
        logger.info("[CLIP] device: %s, model: %s/%s", self.device, model_name, pretrained)
        self.model, _, self.preprocess = open_clip.create_model_and_transforms(
            model_name,
            pretrained=pretrained,
        )
        self.model = self.model.to(self.device).eval()
        self.tokenizer = open_clip.get_tokenizer(model_name)
        self.text_embs = self.encode_text([prompt.format(label) for label in self.labels])

    @torch.no_grad()
    def encode_text(self, texts: list[str]) -> np.ndarray:
        """Return L2-normalised text embeddings, one row per text."""
        tokens = self.tokenizer(texts).to(self.device)
        features = self.model.encode_text(tokens)
        features = features / features.norm(dim=-1, keepdim=True)
        return features.cpu().numpy()

    @torch.no_grad()
    def encode_image(self, pil_img: Image.Image) -> np.ndarray:
        """Return L2-normalised embedding (1-D numpy)."""
        tensor = self.preprocess(pil_img).unsqueeze(0).to(self.device)
        features = self.model.encode_image(tensor)
        features = features / features.norm(dim=-1, keepdim=True)
        return features.cpu().numpy().flatten()

    def classify(self, path: str) -> str:
        label, score = best_label(
            self.encode_image(pil_from_path(Path(path))), self.text_embs, self.labels
        )
        logger.debug("[CLIP] %s -> %s (%.3f)", path, label, score)
        return label


def load_classifier(cfg: GalleryConfig) -> Optional[Classifier]:
    """Build the configured classifier, or None when it is disabled or unavailable."""
    if not cfg.classifier_enabled:
        logger.info("Classifier disabled; titles fall back to image paths")
        return None
    try:
        return CLIPLabeler(cfg.labels, cfg.clip_model, cfg.clip_pretrained)
    except Exception:
        logger.exception(
            "Could not load CLIP model %s/%s; titles fall back to image paths",
            cfg.clip_model,
            cfg.clip_pretrained,
        )
        return None


# ---------------------------------------------------------------------------
# Image helpers
# ---------------------------------------------------------------------------

IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp", ".tiff"}


def list_images(folder: Path) -> list[Path]:
    """List image files in *folder* in directory order (non-recursive, unsorted).

    Raises OSError if the folder cannot be read.
    """
    return [
        p
        for p in folder.iterdir()
        if not p.name.startswith(".")
        and p.suffix.lower() in IMAGE_EXTENSIONS
        and p.is_file()
    ]


def pil_from_path(path: Path) -> Image.Image:
    return Image.open(path).convert("RGB")


# ---------------------------------------------------------------------------
# Gallery items
# ---------------------------------------------------------------------------


@dataclass
class GalleryItem:
    path: str  # public relative URL, e.g. "images/cat.jpg"
    title: str

    def to_dict(self) -> dict:
        """Serialise for templates / JSON responses."""
        return {"path": self.path, "title": self.title}


# on_progress(current_index, total, current_filename)
ProgressCallback = Callable[[int, int, str], None]


def label_image(
    classifier: Optional[Classifier], image_path: Path, public_path: str
) -> str:
    """Title for one image.  Any classifier problem degrades to *public_path*."""
    if classifier is None:
        return public_path
    try:
        label = classifier.classify(str(image_path))
    except Exception as e:
        logger.warning("Classifier failed for %s: %s", image_path, e)
        return public_path
    if not label or not str(label).strip():
        logger.warning("Classifier returned no label for %s", image_path)
        return public_path
    return str(label).strip()


def build_gallery(
    image_dir: Path,
    classifier: Optional[Classifier] = None,
    url_prefix: str = "images",
    on_progress: Optional[ProgressCallback] = None,
    images: Optional[list[Path]] = None,
) -> list[GalleryItem]:
    """List *image_dir* and title every image, preserving directory order.

    Pass *images* to reuse a listing already taken from *image_dir*.
    Raises OSError if the directory cannot be read.
    """
    if images is None:
        images = list_images(image_dir)
    items: list[GalleryItem] = []

    for i, img_path in enumerate(images):
        logger.info("Processing %s", img_path.name)
        public_path = f"{url_prefix}/{img_path.name}"
        items.append(
            GalleryItem(
                path=public_path,
                title=label_image(classifier, img_path, public_path),
            )
        )
        if on_progress:
            on_progress(i + 1, len(images), img_path.name)

    logger.info(
        "Collected %d gallery item(s): %s",
        len(items),
        [item.to_dict() for item in items],
    )
    return items


# ---------------------------------------------------------------------------
# CSV report
# ---------------------------------------------------------------------------


def write_csv(items: list[GalleryItem], csv_path: Path):
    csv_path.parent.mkdir(parents=True, exist_ok=True)
    with open(csv_path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(["path", "title"])
        for item in items:
            writer.writerow([item.path, item.title])
    print(f"Report saved -> {csv_path}")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Image Labeler -- title every image in a folder.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p.add_argument(
        "--config",
        type=str,
        default=None,
        help="YAML settings file (default: $GALLERY_CONFIG or default.yaml)",
    )
    p.add_argument(
        "--input",
        type=str,
        default=None,
        help="Folder with images (default: image_dir from the config)",
    )
    p.add_argument(
        "--output",
        type=str,
        default=None,
        help="Write a CSV report (path,title) to this file",
    )
    p.add_argument("--url-prefix", type=str, default=None)
    p.add_argument(
        "--labels",
        type=str,
        default=None,
        help="Comma-separated label vocabulary (overrides the config)",
    )
    p.add_argument(
        "--no-classifier",
        action="store_true",
        help="Skip CLIP and title images with their paths",
    )
    p.add_argument("--clip-model", type=str, default=None)
    p.add_argument("--clip-pretrained", type=str, default=None)
    p.add_argument("-v", "--verbose", action="store_true", help="Log every file")
    return p.parse_args(argv)


def config_from_args(args: argparse.Namespace) -> GalleryConfig:
    """Apply command-line overrides on top of the YAML settings."""
    cfg = load_config(Path(args.config) if args.config else None)
    if args.input:
        cfg.image_dir = args.input
    if args.url_prefix is not None:
        cfg.url_prefix = args.url_prefix.strip("/")
    if args.labels:
        cfg.labels = [s.strip() for s in args.labels.split(",") if s.strip()]
    if args.no_classifier:
        cfg.classifier_enabled = False
    if args.clip_model:
        cfg.clip_model = args.clip_model
    if args.clip_pretrained:
        cfg.clip_pretrained = args.clip_pretrained
    cfg.validate()
    return cfg


def main(argv: Optional[list[str]] = None):
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        cfg = config_from_args(args)
    except ValueError as e:
        sys.exit(str(e))

    input_dir = cfg.image_path
    if not input_dir.is_dir():
        sys.exit(f"Input folder not found: {input_dir}")

    print("=" * 60)
    print("  Image Labeler")
    print("=" * 60)
    print(f"  Input     : {input_dir}")
    print(f"  URL prefix: {cfg.url_prefix}")
    if cfg.classifier_enabled:
        print(f"  CLIP      : {cfg.clip_model}/{cfg.clip_pretrained}")
        print(f"  Labels    : {len(cfg.labels)}")
    else:
        print("  CLIP      : off (titles = paths)")
    print("=" * 60)

    t0 = time.time()
    classifier = load_classifier(cfg)

    try:
        images = list_images(input_dir)
    except OSError as e:
        sys.exit(f"Cannot read input folder {input_dir}: {e}")
    pbar = tqdm(total=len(images), desc="  Labelling", unit="img")

    def cli_progress(current: int, total: int, filename: str):
        pbar.update(1)

    items = build_gallery(
        input_dir,
        classifier=classifier,
        url_prefix=cfg.url_prefix,
        on_progress=cli_progress,
        images=images,
    )
    pbar.close()

    for item in items:
        tqdm.write(f"  {item.path} -> {item.title}")

    if args.output:
        write_csv(items, Path(args.output))

    print(f"\n{'=' * 60}")
    print(f"  Done!  {len(items)} images labelled  ({time.time() - t0:.1f}s)")
    print(f"{'=' * 60}")


if __name__ == "__main__":
    main()
