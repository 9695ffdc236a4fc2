import os
import re


content_types = {
    ".jpeg": "image/jpeg",
    ".jpg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
    ".pdf": "application/pdf",
    ".dzi": "application/xml",
}


def get_safe_base_name(file_name: str) -> str:
    """
    "Floor Plan (v2).PDF" -> "Floor_Plan__v2_".

    Must stay in sync with the tile server, which rebuilds the same paths.
    """

    base = re.sub(r"\.pdf$", "", file_name, flags=re.IGNORECASE)
    return re.sub(r"[^a-zA-Z0-9]", "_", base)


def get_page_name(file_name: str, page_number: int) -> str:
    return f"{get_safe_base_name(file_name)}-page{page_number}"


def get_source_path(project_id: str, file_name: str) -> str:
    return f"{project_id}/{get_safe_base_name(file_name)}.pdf"


def get_preview_path(project_id: str, file_name: str, page_number: int) -> str:
    return f"{project_id}/previews/{get_page_name(file_name, page_number)}.png"


def get_tiles_root(project_id: str, file_name: str, page_number: int = 1) -> str:
    return f"{project_id}/tiles/{get_page_name(file_name, page_number)}"


def get_tile_path(tiles_root: str, level: int | str, tile_name: str) -> str:
    """
    tile_name -> "{col}_{row}.{ext}" as written by the tiler.
    """

    return f"{tiles_root}_files/{level}/{tile_name}"


def get_content_type(file_name: str) -> str:
    _, ext = os.path.splitext(file_name.lower())
    return content_types.get(ext, "application/octet-stream")