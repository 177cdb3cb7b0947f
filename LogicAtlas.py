import os
import sys
import json
import math
import argparse
from PIL import Image
from typing import List, Dict, Tuple, Optional, Any


DEFAULT_OUTPUT_NAME = "atlas"
DEFAULT_PADDING = 2
DEFAULT_PIVOT = "C"

# Scan order: every .png first, then .jpg/.jpeg, then .bmp
SUPPORTED_EXTENSIONS = ('.png', '.jpg', '.jpeg', '.bmp')

# Canvas width heuristic: max(MIN_CANVAS_WIDTH, ceil(sqrt(total_area) * CANVAS_WIDTH_FACTOR))
MIN_CANVAS_WIDTH = 512
CANVAS_WIDTH_FACTOR = 1.5

PIVOTS = {
    "C": (0.5, 0.5),   # Center
    "TL": (0.0, 0.0),  # Top-left
    "BC": (0.5, 1.0),  # Bottom-center
}


class AtlasError(Exception):
    """Base class for errors that abort an atlas build."""


class EmptyInputError(AtlasError):
    """Raised when there are no sprites to pack."""


class MissingDirectoryError(AtlasError):
    """Raised when the input directory does not exist."""


class Rectangle:
    """Represents a rectangle with width, height, and position (x, y)."""
    def __init__(self, width: int, height: int, x: int = 0, y: int = 0, name: str = ""):
        self.width = width
        self.height = height
        self.x = x
        self.y = y
        self.name = name

    def __repr__(self):
        return f"Rectangle({self.width}×{self.height} at ({self.x},{self.y}) - {self.name})"

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    def intersects(self, other: 'Rectangle') -> bool:
        """Check if this rectangle intersects with another. Shared edges do not count."""
        return not (
            self.right <= other.x or
            self.bottom <= other.y or
            self.x >= other.right or
            self.y >= other.bottom
        )

    def contains(self, other: 'Rectangle') -> bool:
        """Check if another rectangle lies completely inside this one."""
        return (other.x >= self.x and other.y >= self.y and
                other.right <= self.right and other.bottom <= self.bottom)

    def area(self) -> int:
        """Get the area of the rectangle."""
        return self.width * self.height


class SpriteNode:
    """One source image: its name, intrinsic size and, once packed, its placement."""
    def __init__(self, name: str, width: int, height: int, path: Optional[str] = None,
                 rect: Optional[Rectangle] = None):
        self.name = name
        self.width = width
        self.height = height
        self.path = path
        self.rect = rect

    def __repr__(self):
        return f"SpriteNode({self.name!r}, {self.width}×{self.height}, rect={self.rect})"

    def area(self) -> int:
        return self.width * self.height

    def placed(self, x: int, y: int) -> 'SpriteNode':
        """Return a copy of this sprite placed at (x, y). The placement is never scaled."""
        return SpriteNode(self.name, self.width, self.height, self.path,
                          Rectangle(self.width, self.height, x, y, self.name))


class PackedAtlas:
    """Result of a packing run: placed sprites in placement order plus the final canvas size."""
    def __init__(self, sprites: List[SpriteNode], width: int, height: int, canvas_width: int):
        self.sprites = sprites
        self.width = width
        self.height = height
        self.canvas_width = canvas_width  # the width estimate the shelves were laid out against

    def __repr__(self):
        return f"PackedAtlas({self.width}×{self.height}, {len(self.sprites)} sprites)"


def estimate_canvas_width(sprites: List[SpriteNode]) -> int:
    """Heuristic width for the shelves: roughly square, never below MIN_CANVAS_WIDTH."""
    total_area = sum(s.area() for s in sprites)
    return max(MIN_CANVAS_WIDTH, math.ceil(math.sqrt(total_area) * CANVAS_WIDTH_FACTOR))


def compute_canvas_size(sprites: List[SpriteNode]) -> Tuple[int, int]:
    """Return the tightest (width, height) enclosing every placed sprite."""
    if not sprites:
        raise EmptyInputError("No sprites to measure")
    final_width = max(s.rect.right for s in sprites)
    final_height = max(s.rect.bottom for s in sprites)
    return final_width, final_height


class ShelfPacker:
    """Single-pass shelf packer.

    Sprites are sorted by height (tallest first) and laid out left to right in
    rows. When the next sprite would cross the estimated canvas width a new row
    is started below the tallest sprite of the current one. Nothing is ever
    rejected: a sprite wider than the estimate gets a row of its own and the
    final canvas simply grows to fit it.
    """

    def __init__(self, padding: int = DEFAULT_PADDING):
        # Negative padding is not validated here; the CLI rejects it
        self.padding = padding

    def sort_sprites(self, sprites: List[SpriteNode]) -> List[SpriteNode]:
        """Sort by height, tallest first. sorted() is stable, so ties keep their input order."""
        return sorted(sprites, key=lambda s: s.height, reverse=True)

    def place(self, sprites: List[SpriteNode], canvas_width: int) -> List[SpriteNode]:
        """Lay out already sorted sprites in shelves and return placed copies."""
        placed = []
        current_x = 0
        current_y = 0
        row_height = 0

        for sprite in sprites:
            # A sprite wider than the canvas at x = 0 stays on the current (empty) row
            if current_x > 0 and current_x + sprite.width > canvas_width:
                # Start a new row
                current_y += row_height + self.padding
                current_x = 0
                row_height = 0

            placed.append(sprite.placed(current_x, current_y))

            current_x += sprite.width + self.padding
            row_height = max(row_height, sprite.height)

        return placed

    def pack(self, sprites: List[SpriteNode]) -> PackedAtlas:
        """Pack sprites and return the placed copies with the final canvas size."""
        if not sprites:
            raise EmptyInputError("No sprites to pack")

        ordered = self.sort_sprites(sprites)
        canvas_width = estimate_canvas_width(ordered)
        placed = self.place(ordered, canvas_width)
        width, height = compute_canvas_size(placed)
        return PackedAtlas(placed, width, height, canvas_width)


def packing_efficiency(atlas: PackedAtlas) -> float:
    """Percentage of the canvas covered by sprite pixels."""
    total_pixels = atlas.width * atlas.height
    sprite_pixels = sum(s.rect.area() for s in atlas.sprites)
    return (sprite_pixels / total_pixels) * 100 if total_pixels > 0 else 0


def resolve_pivot(mode: Optional[str]) -> Tuple[float, float]:
    """Map a pivot token to normalized (x, y). Unknown tokens fall back to center."""
    if not mode:
        return PIVOTS[DEFAULT_PIVOT]
    return PIVOTS.get(mode.strip().upper(), PIVOTS[DEFAULT_PIVOT])


def build_metadata(atlas: PackedAtlas, output_name: str, pivot_mode: Optional[str] = DEFAULT_PIVOT) -> Dict[str, Any]:
    """Describe the packed atlas. Sprite records follow the packing order, not the scan order."""
    pivot_x, pivot_y = resolve_pivot(pivot_mode)
    return {
        "atlas": f"{output_name}.png",
        "width": atlas.width,
        "height": atlas.height,
        "sprites": [{
            "name": s.name,
            "x": s.rect.x,
            "y": s.rect.y,
            "w": s.rect.width,
            "h": s.rect.height,
            "pivot_x": pivot_x,
            "pivot_y": pivot_y,
        } for s in atlas.sprites],
    }


def _format_pivot(value: float) -> str:
    # str.format ignores the locale, so the decimal point is always '.'
    return f"{value:.2f}"


def format_metadata(metadata: Dict[str, Any]) -> str:
    """Render metadata as JSON text.

    json.dump would print pivots as 0.5; engines reading these files expect
    exactly two decimals, so the layout is written out by hand. Strings still
    go through json.dumps for escaping.
    """
    lines = [
        "{",
        f'  "atlas": {json.dumps(metadata["atlas"], ensure_ascii=False)},',
        f'  "width": {metadata["width"]},',
        f'  "height": {metadata["height"]},',
        '  "sprites": [',
    ]

    sprites = metadata["sprites"]
    for i, sprite in enumerate(sprites):
        lines.append("    {")
        lines.append(f'      "name": {json.dumps(sprite["name"], ensure_ascii=False)},')
        lines.append(f'      "x": {sprite["x"]},')
        lines.append(f'      "y": {sprite["y"]},')
        lines.append(f'      "w": {sprite["w"]},')
        lines.append(f'      "h": {sprite["h"]},')
        lines.append(f'      "pivot_x": {_format_pivot(sprite["pivot_x"])},')
        lines.append(f'      "pivot_y": {_format_pivot(sprite["pivot_y"])}')
        lines.append("    }," if i < len(sprites) - 1 else "    }")

    lines.append("  ]")
    lines.append("}")
    return "\n".join(lines) + "\n"


def export_metadata(metadata: Dict[str, Any], json_path: str) -> None:
    with open(json_path, 'w', encoding='utf-8', newline='\n') as f:
        f.write(format_metadata(metadata))


def find_sprite_files(folder: str) -> List[str]:
    """List supported images directly inside folder, grouped by extension and sorted by name."""
    if not os.path.isdir(folder):
        raise MissingDirectoryError(f"Input directory '{folder}' does not exist.")

    # Use os.listdir instead of walk to avoid recursion
    files = sorted(os.listdir(folder))
    sprite_files = []
    for ext in SUPPORTED_EXTENSIONS:
        for file in files:
            full_path = os.path.join(folder, file)
            if os.path.isfile(full_path) and os.path.splitext(file)[1].lower() == ext:
                sprite_files.append(full_path)
    return sprite_files


def load_sprites(paths: List[str]) -> List[SpriteNode]:
    """Read the size of each image. Unreadable or empty images are skipped with a warning."""
    sprites = []
    for path in paths:
        try:
            with Image.open(path) as img:
                # Decode fully so truncated files fail here rather than while rendering
                img.load()
                width, height = img.size
        except (OSError, ValueError, Image.DecompressionBombError) as e:
            print(f"Error loading {path}: {e}")
            continue

        if width <= 0 or height <= 0:
            print(f"Skipping {path}: image has no pixels ({width}×{height})")
            continue

        name = os.path.splitext(os.path.basename(path))[0]
        sprites.append(SpriteNode(name, width, height, path))
    return sprites


def render_atlas(atlas: PackedAtlas) -> Image.Image:
    """Paste every sprite, unscaled, onto a fully transparent canvas of the final size.

    Only sprites loaded from a file can be rendered.
    """
    sheet_img = Image.new('RGBA', (atlas.width, atlas.height), (0, 0, 0, 0))
    for sprite in atlas.sprites:
        if sprite.path is None:
            raise AtlasError(f"Sprite '{sprite.name}' has no source file to render")
        with Image.open(sprite.path) as img:
            sheet_img.paste(img.convert('RGBA'), (sprite.rect.x, sprite.rect.y))
    return sheet_img


def save_atlas(sheet_img: Image.Image, png_path: str) -> None:
    sheet_img.save(png_path, format='PNG')


def build_atlas(input_dir: str, output_name: str = DEFAULT_OUTPUT_NAME, padding: int = DEFAULT_PADDING,
                pivot_mode: str = DEFAULT_PIVOT, output_dir: str = ".") -> Tuple[str, str, PackedAtlas]:
    """Scan input_dir, pack its sprites and write <output_name>.png and <output_name>.json.

    Raises MissingDirectoryError or EmptyInputError before anything is written.
    """
    sprite_files = find_sprite_files(input_dir)
    sprites = load_sprites(sprite_files)
    if not sprites:
        raise EmptyInputError(f"No images found in {input_dir}")

    print(f"Found {len(sprites)} sprites. Packing...")
    atlas = ShelfPacker(padding).pack(sprites)

    os.makedirs(output_dir, exist_ok=True)
    png_path = os.path.join(output_dir, f"{output_name}.png")
    json_path = os.path.join(output_dir, f"{output_name}.json")

    save_atlas(render_atlas(atlas), png_path)
    print(f"Generated Atlas: {png_path} ({atlas.width}×{atlas.height})")

    export_metadata(build_metadata(atlas, output_name, pivot_mode), json_path)
    print(f"Generated Data:  {json_path}")

    return png_path, json_path, atlas


def non_negative_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: '{value}'")
    if number < 0:
        raise argparse.ArgumentTypeError(f"padding must not be negative: {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='logicatlas',
        description='Pack a folder of sprites into a texture atlas with JSON metadata',
        epilog='Example: logicatlas ./MySprites -o HeroSheet --pivot BC')
    parser.add_argument('input_folder', help='Directory containing sprite images')
    parser.add_argument('-o', '--output', default=DEFAULT_OUTPUT_NAME,
                        help=f"Output filename without extension (default '{DEFAULT_OUTPUT_NAME}')")
    parser.add_argument('--padding', type=non_negative_int, default=DEFAULT_PADDING,
                        help=f'Padding between sprites in pixels (default {DEFAULT_PADDING})')
    # No choices= here: unknown pivots are accepted and fall back to center
    parser.add_argument('--pivot', type=str.upper, default=DEFAULT_PIVOT,
                        help=f'Global pivot setting. Options: C, TL, BC (default {DEFAULT_PIVOT})')
    parser.add_argument('--output-dir', default=os.getcwd(),
                        help='Directory to write the atlas into (default: current directory)')
    return parser


def main(argv: Optional[List[str]] = None):
    print("LogicAtlas v1.0")
    print("Headless Sprite Packer")

    if argv is None:
        argv = sys.argv[1:]

    parser = build_parser()
    if not argv:
        parser.print_help()
        return

    args = parser.parse_args(argv)

    try:
        _, _, atlas = build_atlas(args.input_folder, args.output, args.padding, args.pivot, args.output_dir)
    except AtlasError as e:
        print(f"Error: {e}")
        return

    print(f"Packing efficiency: {packing_efficiency(atlas):.2f}%")
    print("Done!")


if __name__ == "__main__":
    main()
