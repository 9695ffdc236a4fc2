import os

from concurrent.futures import ThreadPoolExecutor

import pytest

from core import PagePipeline
from type_defs.errors import PipelineError, StorageError
from type_defs.shared import PageInput

from conftest import FakeStorage


@pytest.fixture
def uploads():
    with ThreadPoolExecutor(max_workers=4) as executor:
        yield executor


@pytest.fixture
def linearized_pdf(tmp_path, plan_pdf):
    path = tmp_path / "linearized.pdf"
    path.write_bytes(plan_pdf)
    return str(path)


@pytest.fixture
def pages_dir(tmp_path):
    path = tmp_path / "pages"
    path.mkdir()
    return str(path)


def make_page(linearized_pdf, page_number=1) -> PageInput:
    return PageInput(
        normalized_document=linearized_pdf,
        page_number=page_number,
        page_count=3,
        project_id="proj1",
        document_id="doc-1",
        file_name="plan.pdf",
        correlation_id="abcd1234",
    )


def test_page_steps_and_progress(runner, storage, uploads, pages_dir, linearized_pdf):
    previews = []
    progress = []
    pipeline = PagePipeline(runner, storage, uploads, pages_dir, on_preview=previews.append)

    result = pipeline.run(make_page(linearized_pdf, 1), progress.append)

    assert (result.page_number, result.width, result.height) == (1, 700, 300)
    assert progress == [20, 40, 50, 55, 70, 90, 100]
    assert previews == ["proj1/previews/plan-page1.png"]
    assert storage.objects["proj1/previews/plan-page1.png"][1] == "image/png"

    # 11 levels: 2 tiles at full size, 1 at every level below.
    assert len(storage.keys_under("proj1/tiles/plan-page1_files/")) == 12
    assert os.listdir(pages_dir) == []

    commands = [command for command, _ in runner.calls]
    assert commands[:3] == ["qpdf", "gs", "gs"]
    assert "-r600" in runner.calls[1][1]
    assert "-r150" in runner.calls[2][1]


def test_only_first_page_sets_the_preview(runner, storage, uploads, pages_dir, linearized_pdf):
    previews = []
    pipeline = PagePipeline(runner, storage, uploads, pages_dir, on_preview=previews.append)

    pipeline.run(make_page(linearized_pdf, 2))

    assert previews == []
    assert storage.exists("proj1/previews/plan-page2.png")


def test_cleanup_after_failed_upload(runner, uploads, pages_dir, linearized_pdf):
    storage = FakeStorage(fail_on=lambda path: path.endswith("/10/1_0.jpeg"))
    pipeline = PagePipeline(runner, storage, uploads, pages_dir)

    with pytest.raises(StorageError):
        pipeline.run(make_page(linearized_pdf, 1))

    assert os.listdir(pages_dir) == []


def test_upload_tiles_requires_the_tiles_dir(runner, storage, uploads, pages_dir):
    pipeline = PagePipeline(runner, storage, uploads, pages_dir)

    with pytest.raises(PipelineError):
        pipeline.upload_tiles(os.path.join(pages_dir, "missing_files"), "proj1/tiles/plan-page1")


def test_upload_tiles_paths(runner, storage, uploads, tmp_path):
    files_dir = tmp_path / "plan-page1_tiles_files"
    (files_dir / "0").mkdir(parents=True)
    (files_dir / "1").mkdir()
    (files_dir / "0" / "0_0.jpeg").write_bytes(b"a")
    (files_dir / "1" / "0_0.jpeg").write_bytes(b"b")
    (files_dir / "1" / "1_0.jpeg").write_bytes(b"c")

    pipeline = PagePipeline(runner, storage, uploads, str(tmp_path))

    assert pipeline.upload_tiles(str(files_dir), "proj1/tiles/plan-page1") == 3
    assert storage.keys_under("proj1/tiles/") == [
        "proj1/tiles/plan-page1_files/0/0_0.jpeg",
        "proj1/tiles/plan-page1_files/1/0_0.jpeg",
        "proj1/tiles/plan-page1_files/1/1_0.jpeg",
    ]
    assert storage.get("proj1/tiles/plan-page1_files/1/1_0.jpeg") == b"c"
