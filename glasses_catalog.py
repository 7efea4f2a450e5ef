"""Selectable glasses styles and their overlay artwork.

Every style draws its artwork into a BGRA sprite ``base_width`` pixels wide.
The overlay transform normalizes scale against that width, so artwork loaded
from disk is resized to the same width.
"""
import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import cv2
import numpy as np

logger = logging.getLogger(__name__)

# Fraction of the sprite height where the eye line sits
SPRITE_PIVOT_Y = 0.35

LENS_TINT_BGRA = (217, 40, 109, 64)
REFLECTION_BGRA = (255, 255, 255, 28)


@dataclass(frozen=True)
class OverlayAsset:
    id: str
    name: str
    description: str
    color: str
    frame_width: float
    frame_height: float
    bridge_width: float
    temple_length: float
    base_width: int

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "color": self.color,
            "frameWidth": self.frame_width,
            "frameHeight": self.frame_height,
            "bridgeWidth": self.bridge_width,
            "templeLength": self.temple_length,
            "baseWidth": self.base_width,
        }


GLASSES_STYLES: Tuple[OverlayAsset, ...] = (
    OverlayAsset("aviator", "Aviator Elite", "Timeless teardrop silhouette",
                 "#1c1c1c", 145, 55, 20, 145, base_width=290),
    OverlayAsset("rectangular", "Executive", "Sharp modern frames",
                 "#252525", 140, 48, 18, 140, base_width=280),
    OverlayAsset("round", "Visionary", "Bold circular design",
                 "#1a1a1a", 130, 52, 22, 135, base_width=260),
    OverlayAsset("oversized", "Square Luxe", "Dramatic luxury frames",
                 "#0f0f0f", 135, 52, 22, 135, base_width=270),
)

_BY_ID = {g.id: g for g in GLASSES_STYLES}
DEFAULT_STYLE_ID = GLASSES_STYLES[0].id


def get_style(style_id: str) -> OverlayAsset:
    try:
        return _BY_ID[style_id]
    except KeyError:
        raise KeyError(f"unknown glasses style: {style_id!r}") from None


def style_or_default(style_id: Optional[str]) -> OverlayAsset:
    return _BY_ID.get(style_id, GLASSES_STYLES[0])


# Artwork, in view-box units:
#   (view_w, view_h), lens kind, lens boxes (x, y, w, h, corner), stroke,
#   bridge polyline, hinge boxes (x, y, w, h)
_ARTWORK = {
    "aviator": ((320, 120), "teardrop",
                [(30, 15, 100, 85, 0), (190, 15, 100, 85, 0)], 5,
                [(130, 50), (145, 40), (175, 40), (190, 50)],
                [(8, 45, 24, 20), (288, 45, 24, 20)]),
    "rectangular": ((320, 95), "rect",
                    [(18, 12, 125, 65, 12), (177, 12, 125, 65, 12)], 5,
                    [(143, 44), (177, 44)],
                    [(2, 34, 20, 22), (298, 34, 20, 22)]),
    "round": ((300, 110), "circle",
              [(30, 10, 90, 90, 0), (180, 10, 90, 90, 0)], 6,
              [(120, 50), (140, 42), (160, 42), (180, 50)],
              [(22, 46, 14, 18), (264, 46, 14, 18)]),
    "oversized": ((360, 140), "rect",
                  [(35, 18, 115, 90, 22), (210, 18, 115, 90, 22)], 5,
                  [(150, 55), (170, 48), (190, 48), (210, 55)],
                  [(15, 50, 24, 28), (321, 50, 24, 28)]),
}


def hex_to_bgr(color: str) -> Tuple[int, int, int]:
    c = color.lstrip("#")
    if len(c) == 3:
        c = "".join(ch * 2 for ch in c)
    r, g, b = int(c[0:2], 16), int(c[2:4], 16), int(c[4:6], 16)
    return b, g, r


def _rounded_rect(img, x, y, w, h, r, color, thickness):
    r = int(max(0, min(r, w // 2, h // 2)))
    x0, y0, x1, y1 = x, y, x + w, y + h
    if thickness < 0:
        cv2.rectangle(img, (x0 + r, y0), (x1 - r, y1), color, -1)
        cv2.rectangle(img, (x0, y0 + r), (x1, y1 - r), color, -1)
    else:
        cv2.line(img, (x0 + r, y0), (x1 - r, y0), color, thickness, cv2.LINE_AA)
        cv2.line(img, (x0 + r, y1), (x1 - r, y1), color, thickness, cv2.LINE_AA)
        cv2.line(img, (x0, y0 + r), (x0, y1 - r), color, thickness, cv2.LINE_AA)
        cv2.line(img, (x1, y0 + r), (x1, y1 - r), color, thickness, cv2.LINE_AA)
    if r == 0:
        return
    for (cx, cy), start in (((x0 + r, y0 + r), 180), ((x1 - r, y0 + r), 270),
                            ((x1 - r, y1 - r), 0), ((x0 + r, y1 - r), 90)):
        cv2.ellipse(img, (cx, cy), (r, r), 0, start, start + 90, color, thickness, cv2.LINE_AA)


def _draw_lens(img, kind, box, color, thickness):
    x, y, w, h, corner = box
    if kind == "rect":
        _rounded_rect(img, x, y, w, h, corner, color, thickness)
    elif kind == "circle":
        cv2.circle(img, (x + w // 2, y + h // 2), min(w, h) // 2, color, thickness, cv2.LINE_AA)
    else:
        # teardrop: wider on top, sagging toward the outer-bottom corner
        center = (x + w // 2, y + int(h * 0.48))
        cv2.ellipse(img, center, (w // 2, int(h * 0.48)), 0, 0, 360, color, thickness, cv2.LINE_AA)


def build_sprite(asset: OverlayAsset) -> np.ndarray:
    """Draw the style's artwork as a BGRA image ``asset.base_width`` wide."""
    (view_w, view_h), kind, lenses, stroke, bridge, hinges = _ARTWORK[asset.id]
    k = asset.base_width / float(view_w)
    W = int(asset.base_width)
    H = max(1, int(round(view_h * k)))

    def px(v):
        return int(round(v * k))

    boxes = [(px(x), px(y), px(w), px(h), px(c)) for x, y, w, h, c in lenses]
    frame_bgra = hex_to_bgr(asset.color) + (255,)
    thickness = max(1, px(stroke))

    tint = np.zeros((H, W, 4), np.uint8)
    for box in boxes:
        _draw_lens(tint, kind, box, LENS_TINT_BGRA, -1)
    sprite = tint.copy()
    for x, y, w, h, _ in boxes:
        # soft highlight across the upper third of each lens
        cv2.line(sprite, (x + w // 5, y + h // 4), (x + w // 2, y + h // 6),
                 REFLECTION_BGRA, max(1, thickness // 2), cv2.LINE_AA)
    sprite[tint[..., 3] == 0] = 0

    for box in boxes:
        _draw_lens(sprite, kind, box, frame_bgra, thickness)
    pts = np.array([[px(bx), px(by)] for bx, by in bridge], np.int32)
    cv2.polylines(sprite, [pts], False, frame_bgra, max(1, thickness - 1), cv2.LINE_AA)
    for hx, hy, hw, hh in hinges:
        _rounded_rect(sprite, px(hx), px(hy), px(hw), px(hh), px(4), frame_bgra, -1)
    return sprite


def read_rgba(path: str) -> np.ndarray:
    img = cv2.imread(path, cv2.IMREAD_UNCHANGED)
    if img is None:
        raise FileNotFoundError(path)
    if img.ndim == 2:
        img = cv2.cvtColor(img, cv2.COLOR_GRAY2BGRA)
    elif img.shape[2] == 3:
        a = np.full(img.shape[:2], 255, np.uint8)
        img = np.dstack([img, a])
    return img


_sprite_cache: Dict[Tuple[str, Optional[str]], np.ndarray] = {}


def load_sprite(asset: OverlayAsset, art_dir: Optional[str] = None) -> np.ndarray:
    """
    Artwork for ``asset``: ``<art_dir>/<id>.png`` when present, otherwise the
    drawn sprite. Either way the result is ``asset.base_width`` pixels wide.
    """
    key = (asset.id, art_dir)
    if key in _sprite_cache:
        return _sprite_cache[key]

    path = os.path.join(art_dir, f"{asset.id}.png") if art_dir else None
    if path and os.path.exists(path):
        img = read_rgba(path)
        h, w = img.shape[:2]
        new_h = max(1, int(round(h * asset.base_width / float(w))))
        interp = cv2.INTER_AREA if w > asset.base_width else cv2.INTER_LINEAR
        sprite = cv2.resize(img, (asset.base_width, new_h), interpolation=interp)
        logger.info("Loaded artwork for %s from %s (%dx%d -> %dx%d)",
                    asset.id, path, w, h, asset.base_width, new_h)
    else:
        sprite = build_sprite(asset)

    _sprite_cache[key] = sprite
    return sprite


def clear_sprite_cache():
    _sprite_cache.clear()
