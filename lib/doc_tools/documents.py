import json
import logging
import sys

import fitz

from config.settings import (
    linearize_timeout,
    extract_timeout,
    rasterize_timeout,
    tiling_timeout,
    tile_size as default_tile_size,
    tile_format as default_tile_format,
)
from type_defs.errors import PipelineError, ToolExecutionError
from type_defs.shared import ToolErrorKind
from .tools import ToolRunner

logger = logging.getLogger(__name__)

# qpdf exits 3 when it succeeded with warnings.
QPDF_OK_CODES = (0, 3)


def get_gs_command() -> str:
    return "gswin64c" if sys.platform == "win32" else "gs"


def linearize(runner: ToolRunner, src: str, dest: str, timeout: float = linearize_timeout):
    runner.run("qpdf", [src, "--linearize", dest], timeout=timeout, ok_codes=QPDF_OK_CODES)


def count_pages(path: str) -> int:
    """
    path -> local pdf, normally the linearized one.
    """

    try:
        with fitz.open(path) as doc:
            return doc.page_count

    except (fitz.FileDataError, FileNotFoundError, RuntimeError) as e:
        raise PipelineError(f"could not read page count of {path}: {e}") from e


def extract_page(
    runner: ToolRunner,
    src: str,
    page_number: int,
    dest: str,
    timeout: float = extract_timeout,
):
    """
    page_number -> 1-based, as qpdf expects.
    """

    runner.run(
        "qpdf",
        [src, "--pages", src, str(page_number), "--", dest],
        timeout=timeout,
        ok_codes=QPDF_OK_CODES,
    )


def rasterize_page(
    runner: ToolRunner,
    src: str,
    dest: str,
    dpi: int,
    max_buffer: int,
    timeout: float = rasterize_timeout,
):
    """
    Renders a single page pdf to a 24 bit png with ghostscript.
    """

    # ghostscript band buffer, larger for tiling renders.
    buffer_space = 1_000_000_000 if dpi >= 300 else 500_000_000

    runner.run(
        get_gs_command(),
        [
            "-dSAFER",
            "-dBATCH",
            "-dNOPAUSE",
            "-sDEVICE=png16m",
            f"-r{dpi}",
            f"-dBufferSpace={buffer_space}",
            f"-sOutputFile={dest}",
            src,
        ],
        timeout=timeout,
        max_buffer=max_buffer,
    )


def build_tile_pyramid(
    runner: ToolRunner,
    src: str,
    dest_base: str,
    tile_size: int = default_tile_size,
    tile_format: str = default_tile_format,
    timeout: float = tiling_timeout,
) -> dict[str, int]:
    """
    Runs the pillow tiler (lib.doc_tools.images) in its own interpreter so
    it is bounded by a timeout like the other tools.

    return -> {"width", "height", "levels", "tiles"}.
    """

    output = runner.run(
        sys.executable,
        [
            "-m",
            "lib.doc_tools.images",
            src,
            dest_base,
            "--tile-size",
            str(tile_size),
            "--format",
            tile_format,
        ],
        timeout=timeout,
    )

    try:
        return json.loads(output.stdout.decode("utf-8").strip().splitlines()[-1])

    except (ValueError, IndexError) as e:
        raise ToolExecutionError(
            ToolErrorKind.NonZero.value, "tiler", f"unreadable tiler output: {e}"
        ) from e
