"""Shared fixtures: an in-memory redis, fake storage, records and tools.

The fake tool runner writes the files qpdf, ghostscript and the tiler would
write, so pipelines run end to end without those binaries installed.
"""

import json
import os
import shutil
import threading

from collections import Counter, defaultdict
from typing import Any, Dict, Optional

import fakeredis
import fitz
import pytest

from PIL import Image

from lib.doc_tools import ToolRunner, ToolOutput, build_deep_zoom
from lib.document_records import DocumentRecords
from lib.redis import JobQueue
from type_defs.errors import MetadataStoreError, StorageError, ToolExecutionError


def make_pdf(pages: int = 3) -> bytes:
    doc = fitz.open()
    for i in range(pages):
        page = doc.new_page(width=300, height=200)
        page.insert_text((20, 40), f"Sheet A-{i + 1}")

    data = doc.tobytes()
    doc.close()

    return data


class FakeStorage:
    def __init__(self, fail_on=None):
        self.objects: Dict[str, tuple[bytes, str]] = {}
        self.puts: Counter = Counter()
        self.fail_on = fail_on
        self._lock = threading.Lock()

    def put(self, path, data, content_type, cache_control="31536000", upsert=True):
        if self.fail_on and self.fail_on(path):
            raise StorageError(path, 500, "Internal Server Error")

        with self._lock:
            self.objects[path] = (data, content_type)
            self.puts[path] += 1

    def put_file(self, path, local_path, content_type, **kwargs):
        with open(local_path, "rb") as f:
            data = f.read()

        self.put(path, data, content_type, **kwargs)

        return len(data)

    def get(self, path):
        if path not in self.objects:
            raise StorageError(path, 404, "Object not found")

        return self.objects[path][0]

    def exists(self, path):
        return path in self.objects

    def keys_under(self, prefix):
        return sorted(k for k in self.objects if k.startswith(prefix))


class FakeRecords(DocumentRecords):
    def __init__(self, fail_updates: bool = False):
        self.rows: Dict[str, Dict[str, Any]] = defaultdict(dict)
        self.updates: list[tuple[str, Dict[str, Any]]] = []
        self.deleted: list[str] = []
        self.fail_updates = fail_updates
        self._lock = threading.Lock()

    def get(self, document_id, select="*") -> Optional[Dict[str, Any]]:
        if document_id not in self.rows:
            return None

        row = dict(self.rows[document_id])
        if select == "*":
            return row

        return {k: row.get(k) for k in select.split(",")}

    def update(self, document_id, fields):
        if self.fail_updates:
            raise MetadataStoreError(f"Failed to update document {document_id}. Status: 503")

        with self._lock:
            self.updates.append((document_id, dict(fields)))
            self.rows[document_id].update(fields)

    def delete(self, document_id):
        self.deleted.append(document_id)
        self.rows.pop(document_id, None)

    def progress_history(self, document_id) -> list[int]:
        return [f["progress"] for d, f in self.updates if d == document_id and "progress" in f]


class FakeToolRunner(ToolRunner):
    def __init__(
        self,
        fail_page: Optional[int] = None,
        fail_kind: str = "nonzero",
        raster_size: tuple[int, int] = (700, 300),
    ):
        self.fail_page = fail_page
        self.fail_kind = fail_kind
        self.raster_size = raster_size
        self.calls: list[tuple[str, list[str]]] = []
        self._lock = threading.Lock()

    def run(self, command, args, timeout=None, max_buffer=1024 * 1024, ok_codes=(0,)):
        args = list(args)
        with self._lock:
            self.calls.append((command, args))

        if command == "qpdf" and "--linearize" in args:
            shutil.copyfile(args[0], args[2])

        elif command == "qpdf":
            src, page_number, dest = args[0], int(args[3]), args[5]
            with fitz.open(src) as doc:
                single = fitz.open()
                single.insert_pdf(doc, from_page=page_number - 1, to_page=page_number - 1)
                single.save(dest)
                single.close()

        elif command in ("gs", "gswin64c"):
            src = args[-1]
            if self.fail_page and src.endswith(f"-page{self.fail_page}.pdf"):
                raise ToolExecutionError(self.fail_kind, command, "exit=1: Unrecoverable error")

            dest = next(a.split("=", 1)[1] for a in args if a.startswith("-sOutputFile="))
            size = self.raster_size if "-r600" in args else (175, 75)
            Image.new("RGB", size, "white").save(dest)

        elif "lib.doc_tools.images" in args:
            src, dest_base = args[2], args[3]
            info = build_deep_zoom(src, dest_base, tile_size=int(args[5]), tile_format=args[7])
            return ToolOutput(json.dumps(info).encode(), b"", 0.0)

        return ToolOutput(b"", b"", 0.0)


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis()


@pytest.fixture
def queue(redis_client):
    return JobQueue(redis_client, "test-pdf-processing", lock_duration_ms=60_000, rate_limit_max=0)


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def records():
    return FakeRecords()


@pytest.fixture
def runner():
    return FakeToolRunner()


@pytest.fixture
def work_dir(tmp_path):
    path = tmp_path / "work"
    os.makedirs(path)
    return str(path)


@pytest.fixture
def plan_pdf() -> bytes:
    return make_pdf(3)


@pytest.fixture
def pdf_factory():
    return make_pdf
