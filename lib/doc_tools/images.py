import argparse
import json
import math
import os
import sys

from PIL import Image

# plans rasterized at 600 dpi are far above pillow's decompression bomb limit.
Image.MAX_IMAGE_PIXELS = None

DZI_TEMPLATE = (
    '<?xml version="1.0" encoding="UTF-8"?>\n'
    '<Image xmlns="http://schemas.microsoft.com/deepzoom/2008" '
    'Format="{format}" Overlap="0" TileSize="{tile_size}">\n'
    '  <Size Width="{width}" Height="{height}"/>\n'
    "</Image>\n"
)


def get_image_size(path: str) -> tuple[int, int]:
    # only reads the header.
    with Image.open(path) as img:
        return img.size


def get_max_level(width: int, height: int) -> int:
    return math.ceil(math.log2(max(width, height, 1)))


def get_level_size(width: int, height: int, level: int, max_level: int) -> tuple[int, int]:
    scale = 2 ** (max_level - level)
    return max(1, math.ceil(width / scale)), max(1, math.ceil(height / scale))


def build_deep_zoom(
    src: str,
    dest_base: str,
    tile_size: int = 512,
    tile_format: str = "jpeg",
    quality: int = 80,
) -> dict[str, int]:
    """
    Writes a Deep Zoom pyramid for `src`.

    dest_base -> "/tmp/x/plan-page1" produces "/tmp/x/plan-page1.dzi" and
    "/tmp/x/plan-page1_files/{level}/{col}_{row}.{tile_format}", level 0
    being a single pixel and the last level the full resolution image.

    return -> {"width", "height", "levels", "tiles"}.
    """

    files_dir = f"{dest_base}_files"
    tiles = 0

    with Image.open(src) as source:
        width, height = source.size
        max_level = get_max_level(width, height)

        level_image = source.convert("RGB") if source.mode not in ("RGB", "L") else source.copy()

    # full resolution first, each following level is a downscale of the previous one.
    for level in range(max_level, -1, -1):
        level_w, level_h = get_level_size(width, height, level, max_level)

        if level_image.size != (level_w, level_h):
            level_image = level_image.resize((level_w, level_h), Image.Resampling.LANCZOS)

        level_dir = os.path.join(files_dir, str(level))
        os.makedirs(level_dir, exist_ok=True)

        cols = math.ceil(level_w / tile_size)
        rows = math.ceil(level_h / tile_size)

        for col in range(cols):
            for row in range(rows):
                box = (
                    col * tile_size,
                    row * tile_size,
                    min((col + 1) * tile_size, level_w),
                    min((row + 1) * tile_size, level_h),
                )
                tile = level_image.crop(box)
                tile_path = os.path.join(level_dir, f"{col}_{row}.{tile_format}")

                if tile_format in ("jpeg", "jpg"):
                    tile.save(tile_path, "JPEG", quality=quality)
                else:
                    tile.save(tile_path, tile_format.upper())

                tiles += 1

    with open(f"{dest_base}.dzi", "w", encoding="utf-8") as f:
        f.write(
            DZI_TEMPLATE.format(
                format=tile_format, tile_size=tile_size, width=width, height=height
            )
        )

    return {"width": width, "height": height, "levels": max_level + 1, "tiles": tiles}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Build a Deep Zoom tile pyramid.")
    parser.add_argument("src", help="source raster (png)")
    parser.add_argument("dest", help="output base path, without extension")
    parser.add_argument("--tile-size", type=int, default=512)
    parser.add_argument("--format", default="jpeg")
    parser.add_argument("--quality", type=int, default=80)
    args = parser.parse_args(argv)

    info = build_deep_zoom(
        args.src,
        args.dest,
        tile_size=args.tile_size,
        tile_format=args.format,
        quality=args.quality,
    )
    sys.stdout.write(json.dumps(info) + "\n")

    return 0


if __name__ == "__main__":
    sys.exit(main())
