import logging
import os
import shutil

from concurrent.futures import Executor, Future, FIRST_EXCEPTION, wait
from typing import Callable, Optional

from config.settings import (
    tile_dpi,
    preview_dpi,
    tile_max_buffer,
    preview_max_buffer,
    page_progress as marks,
)
from lib.doc_tools import ToolRunner, extract_page, rasterize_page, build_tile_pyramid
from lib.storage import StorageGateway
from type_defs.errors import PipelineError, ToolExecutionError
from type_defs.shared import PageInput, PageResult, ProgressCallback, ToolErrorKind
from utils.general import (
    get_page_name,
    get_preview_path,
    get_tiles_root,
    get_tile_path,
    get_content_type,
)

logger = logging.getLogger(__name__)


def remove_quietly(path: str, correlation_id: str = ""):
    """
    Best-effort cleanup: failures are logged, never raised.
    """

    try:
        if os.path.isdir(path):
            shutil.rmtree(path)
        else:
            os.remove(path)

    except FileNotFoundError:
        pass

    except OSError as e:
        logger.warning("[%s] could not remove %s: %s", correlation_id, path, e)


class PagePipeline:
    """
    Turns one page of the linearized pdf into an uploaded tile pyramid:

    extract -> rasterize (tiling + preview) -> upload preview -> tile ->
    upload tiles -> cleanup.

    Steps run strictly in order. Tile uploads go through `uploads`, an
    executor shared by all pages of the same document.
    """

    def __init__(
        self,
        runner: ToolRunner,
        storage: StorageGateway,
        uploads: Executor,
        pages_dir: str,
        on_preview: Optional[Callable[[str], None]] = None,
    ):
        self.runner = runner
        self.storage = storage
        self.uploads = uploads
        self.pages_dir = pages_dir
        self.on_preview = on_preview

    def run(self, page: PageInput, on_page_progress: Optional[ProgressCallback] = None) -> PageResult:
        report = on_page_progress or (lambda _: None)
        cid = page.correlation_id
        n = page.page_number

        name = get_page_name(page.file_name, n)
        page_pdf = os.path.join(self.pages_dir, f"{name}.pdf")
        output_png = os.path.join(self.pages_dir, f"{name}.png")
        preview_png = os.path.join(self.pages_dir, f"{name}_preview.png")
        tiles_base = os.path.join(self.pages_dir, f"{name}_tiles")
        files_dir = f"{tiles_base}_files"

        try:
            # 1. extract.
            extract_page(self.runner, page.normalized_document, n, page_pdf)
            report(marks["extracted"])

            # 2. rasterize for tiling.
            rasterize_page(self.runner, page_pdf, output_png, tile_dpi, tile_max_buffer)
            report(marks["rasterized"])

            # 3. rasterize for preview.
            logger.info("[%s] generating preview png at %d dpi (page %d)", cid, preview_dpi, n)
            rasterize_page(self.runner, page_pdf, preview_png, preview_dpi, preview_max_buffer)
            report(marks["preview_rendered"])

            # 4. upload preview, only page 1 is the document preview.
            preview_path = get_preview_path(page.project_id, page.file_name, n)
            size = self.storage.put_file(preview_path, preview_png, "image/png")
            logger.info("[%s] preview uploaded to %s (%.2f MB)", cid, preview_path, size / 1024 / 1024)

            if n == 1 and self.on_preview:
                self.on_preview(preview_path)

            report(marks["preview_uploaded"])

            # 5. tile.
            info = build_tile_pyramid(self.runner, output_png, tiles_base)
            report(marks["tiled"])

            # 6. upload tiles.
            tiles_root = get_tiles_root(page.project_id, page.file_name, n)
            uploaded = self.upload_tiles(files_dir, tiles_root, cid)
            logger.info("[%s] uploaded %d tiles for page %d", cid, uploaded, n)
            report(marks["tiles_uploaded"])

            result = PageResult(page_number=n, width=int(info["width"]), height=int(info["height"]))

        except ToolExecutionError as e:
            logger.error("[%s] page %d failed: %s", cid, n, e)

            if e.kind == ToolErrorKind.Timeout.value:
                raise ToolExecutionError(
                    e.kind,
                    e.tool,
                    e.exit_info,
                    message=f"Page {n} timeout - PDF too complex ({e.tool}: {e.exit_info})",
                ) from e

            raise

        finally:
            # 7. cleanup.
            for path in (output_png, preview_png, page_pdf, f"{tiles_base}.dzi", files_dir):
                remove_quietly(path, cid)

        report(marks["done"])
        logger.info("[%s] page %d/%d completed", cid, n, page.page_count)

        return result

    def upload_tiles(self, files_dir: str, tiles_root: str, correlation_id: str = "") -> int:
        """
        files_dir -> local "{tiles}_files" dir, one sub dir per zoom level.
        tiles_root -> remote "{project}/tiles/{name}", tiles land under "{tiles_root}_files/".

        return -> number of uploaded tiles.
        """

        if not os.path.isdir(files_dir):
            raise PipelineError(f"Tiles directory not found: {files_dir}")

        futures: list[Future] = []

        for level in sorted(os.listdir(files_dir), key=lambda d: int(d) if d.isdigit() else -1):
            level_dir = os.path.join(files_dir, level)
            if not os.path.isdir(level_dir):
                continue

            for tile_name in sorted(os.listdir(level_dir)):
                futures.append(
                    self.uploads.submit(
                        self.storage.put_file,
                        get_tile_path(tiles_root, level, tile_name),
                        os.path.join(level_dir, tile_name),
                        get_content_type(tile_name),
                    )
                )

        logger.debug("[%s] waiting for %d uploads", correlation_id, len(futures))
        done, pending = wait(futures, return_when=FIRST_EXCEPTION)

        failed = [f for f in done if not f.cancelled() and f.exception() is not None]
        if failed:
            for future in pending:
                future.cancel()

            # uploads already running still read local files, let them finish before cleanup.
            wait(futures)
            raise failed[0].exception()  # type: ignore

        return len(futures)
