"""
Generate benchmark images in three size tiers (small, medium, large).
The tiers sit on either side of the default run-policy thresholds (4 MP and
25 MP) so each one exercises a different trial count.
Run: python scripts/generate_test_images.py [--tiers small medium]
"""
from PIL import Image, ImageDraw
import argparse
import math
import os

BASE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
TEST_DIR = os.path.join(BASE_DIR, 'test_images')

TIERS = {
    'small': [(320, 240), (640, 480), (1280, 720)],
    'medium': [(2560, 1600), (3840, 2160)],
    'large': [(6000, 4500)],
}


def save(img, rel_path):
    out_path = os.path.join(TEST_DIR, rel_path)
    os.makedirs(os.path.dirname(out_path), exist_ok=True)
    img.save(out_path)
    print('WROTE', out_path)


def make_scene(w, h):
    """Gradient background with shapes: hard edges for edge detection, several hues for quantization."""
    img = Image.new('RGBA', (w, h), (255, 255, 255, 255))
    d = ImageDraw.Draw(img)
    for y in range(0, h, max(1, h // 64)):
        shade = int(255 * y / max(1, h - 1))
        d.rectangle([0, y, w, y + h // 64], fill=(shade, 128, 255 - shade, 255))
    cx, cy = w // 2, h // 2
    r = min(w, h) // 4
    teeth = 20
    for i in range(teeth):
        ang = 2 * math.pi * i / teeth
        x2 = cx + int((r + r // 6) * math.cos(ang))
        y2 = cy + int((r + r // 6) * math.sin(ang))
        d.line([(cx, cy), (x2, y2)], fill=(0, 0, 0, 255), width=max(1, w // 400))
    d.ellipse([cx - r, cy - r, cx + r, cy + r], fill=(220, 40, 40, 255), outline=(0, 0, 0, 255), width=3)
    d.rectangle([w // 10, h // 10, w // 3, h // 4], fill=(40, 180, 60, 255))
    d.polygon([(w * 3 // 4, h // 8), (w * 7 // 8, h // 3), (w * 5 // 8, h // 3)], fill=(240, 200, 30, 200))
    return img


def main():
    p = argparse.ArgumentParser()
    p.add_argument('--tiers', nargs='+', choices=list(TIERS), default=['small', 'medium'])
    args = p.parse_args()
    os.makedirs(TEST_DIR, exist_ok=True)
    for tier in args.tiers:
        for w, h in TIERS[tier]:
            save(make_scene(w, h), f'{tier}/scene_{w}x{h}.png')


if __name__ == '__main__':
    main()
