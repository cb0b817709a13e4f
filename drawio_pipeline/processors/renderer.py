"""
PNG rendering through the draw.io desktop CLI.

The renderer never raises for a bad diagram: when draw.io fails or produces
a suspiciously small file, a placeholder image is written in its place so the
PNG directory always mirrors the diagram directory.
"""

import logging
import shutil
import subprocess
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Union

from PIL import Image, ImageDraw, ImageFont

from ..config import PipelineSettings

logger = logging.getLogger(__name__)

XVFB_ARGS = ["xvfb-run", "--auto-servernum", "--server-args=-screen 0 1280x1024x24"]

PLACEHOLDER_SIZE = (800, 600)
PLACEHOLDER_FONT_SIZE = 20


def png_path_for(diagram: Union[str, Path], png_dir: Union[str, Path]) -> Path:
    """``png_files/<base name>.png`` for a diagram anywhere in the tree."""
    return Path(png_dir) / f"{Path(diagram).stem}.png"


@dataclass
class RenderResult:
    input_path: Path
    output_path: Path
    success: bool
    placeholder: bool = False
    error: Optional[str] = None

    @property
    def has_output(self) -> bool:
        return self.output_path.exists()


class DrawioRenderer:
    """Wraps ``drawio -x -f png`` (under xvfb on headless runners)."""

    def __init__(self, settings: PipelineSettings):
        self.settings = settings
        if settings.use_xvfb is None:
            self.use_xvfb = shutil.which("xvfb-run") is not None
        else:
            self.use_xvfb = settings.use_xvfb

    def build_command(self, input_path: Path, output_path: Path) -> List[str]:
        cmd = [
            self.settings.drawio_binary,
            "-x",
            "-f", "png",
            "--scale", str(self.settings.png_scale),
            "--quality", str(self.settings.png_quality),
            "-o", str(output_path),
            str(input_path),
        ]
        if self.use_xvfb:
            cmd = XVFB_ARGS + cmd
        return cmd

    def _run_drawio(self, input_path: Path, output_path: Path) -> Optional[str]:
        """Returns None on success, otherwise a short failure description."""
        cmd = self.build_command(input_path, output_path)
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            completed = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.settings.render_timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            return f"draw.io timed out after {self.settings.render_timeout_seconds}s"
        except OSError as e:
            return f"could not start draw.io: {e}"

        if completed.returncode != 0:
            stderr = (completed.stderr or "").strip()
            return f"draw.io exited with {completed.returncode}: {stderr[:300]}"

        if not output_path.exists():
            return "draw.io reported success but wrote no output"

        size = output_path.stat().st_size
        if size <= self.settings.min_png_bytes:
            return f"output is only {size} bytes"
        return None

    def _load_font(self):
        for name in ("DejaVuSans.ttf", "Arial.ttf", "LiberationSans-Regular.ttf"):
            try:
                return ImageFont.truetype(name, PLACEHOLDER_FONT_SIZE)
            except OSError:
                continue
        return ImageFont.load_default()

    def create_placeholder(self, input_path: Path, output_path: Path) -> bool:
        """White 800x600 image with the failure notice in red, centred."""
        text = f"Conversion Failed\n\n{input_path.name}\n\nPlease check the diagram file"
        try:
            image = Image.new("RGB", PLACEHOLDER_SIZE, "white")
            draw = ImageDraw.Draw(image)
            font = self._load_font()
            left, top, right, bottom = draw.multiline_textbbox((0, 0), text, font=font, align="center")
            x = (PLACEHOLDER_SIZE[0] - (right - left)) / 2
            y = (PLACEHOLDER_SIZE[1] - (bottom - top)) / 2
            draw.multiline_text((x, y), text, fill="red", font=font, align="center")
            output_path.parent.mkdir(parents=True, exist_ok=True)
            image.save(output_path, "PNG")
        except (OSError, ValueError) as e:
            logger.error(f"Could not create placeholder PNG for {input_path.name}: {e}")
            return False
        logger.info(f"Created error placeholder for {output_path.name}")
        return True

    def _write_error_note(self, input_path: Path, output_path: Path) -> None:
        note = output_path.with_name(output_path.name + ".error")
        try:
            note.write_text(f"Conversion failed for {input_path.name} at {datetime.now()}\n", encoding="utf-8")
        except OSError as e:
            logger.error(f"Could not write {note}: {e}")

    def render(self, input_path: Union[str, Path], output_path: Union[str, Path]) -> RenderResult:
        input_path = Path(input_path)
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"Converting {input_path.name} -> {output_path.name}")
        error = self._run_drawio(input_path, output_path)
        if error is None:
            logger.info(f"✓ Converted {input_path.name} ({output_path.stat().st_size} bytes)")
            return RenderResult(input_path, output_path, success=True)

        logger.warning(f"⚠ Draw.io conversion failed for {input_path.name}: {error}")
        output_path.unlink(missing_ok=True)
        placeholder = self.create_placeholder(input_path, output_path)
        if not placeholder:
            self._write_error_note(input_path, output_path)
        return RenderResult(input_path, output_path, success=False, placeholder=placeholder, error=error)
