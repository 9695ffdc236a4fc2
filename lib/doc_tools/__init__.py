from .tools import ToolRunner, ToolOutput
from .documents import (
    linearize,
    count_pages,
    extract_page,
    rasterize_page,
    build_tile_pyramid,
)
from .images import build_deep_zoom, get_image_size
