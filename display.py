"""Monochrome 64x32 framebuffer with XOR sprite compositing."""

from __future__ import annotations

WIDTH = 64
HEIGHT = 32


class Display:
    """Framebuffer read by the host renderer.

    `pixels[y][x]` is True for a lit pixel. `redraw` is raised whenever the
    buffer changes and is lowered by the host via `clear_redraw()` once the
    frame has been presented.
    """

    width: int
    height: int
    pixels: list[list[bool]]
    redraw: bool

    def __init__(self, width: int = WIDTH, height: int = HEIGHT) -> None:
        self.width = width
        self.height = height
        self.pixels = [[False] * width for _ in range(height)]
        self.redraw = False

    def clear(self) -> None:
        for row in self.pixels:
            for x in range(self.width):
                row[x] = False
        self.redraw = True

    def clear_redraw(self) -> None:
        self.redraw = False

    def pixel(self, x: int, y: int) -> bool:
        """Read one pixel, coordinates wrap around the edges."""
        return self.pixels[y % self.height][x % self.width]

    def draw_sprite(self, x: int, y: int, rows: bytes) -> bool:
        """XOR an 8-pixel-wide sprite onto the buffer at (x, y).

        Each byte of `rows` is one sprite row, most-significant bit leftmost.
        Both axes wrap. Returns True if any lit pixel was switched off.
        """
        collision = False
        for row, bits in enumerate(rows):
            py = (y + row) % self.height
            line = self.pixels[py]
            for bit in range(8):
                px = (x + bit) % self.width
                sprite_on = bool((bits >> (7 - bit)) & 1)
                old = line[px]
                # bit differs from the pixel, or flips a lit one
                if sprite_on or old:
                    self.redraw = True
                if sprite_on and old:
                    collision = True
                line[px] = old != sprite_on
        return collision

    def lit_count(self) -> int:
        return sum(sum(1 for p in row if p) for row in self.pixels)

    def render(self, on: str = "#", off: str = ".") -> str:
        """Render the buffer as text, one line per row."""
        return "\n".join("".join(on if p else off for p in row) for row in self.pixels)
