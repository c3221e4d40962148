"""Pytest configuration and fixtures."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from tests.fakes import make_image_bytes
from transcoder.conversion.models import ConversionOptions
from transcoder.resources import ResourceTracker
from transcoder.scheduler import Scheduler


@pytest.fixture
def executor():
    pool = ThreadPoolExecutor(max_workers=8)
    yield pool
    pool.shutdown(wait=True, cancel_futures=True)


@pytest.fixture
def tracker():
    return ResourceTracker()


@pytest.fixture
def options():
    return ConversionOptions(format="webp", quality=80)


@pytest.fixture
def make_scheduler(executor, tracker):
    def _make(codec, max_concurrency=4):
        return Scheduler(codec, tracker=tracker, max_concurrency=max_concurrency, executor=executor)

    return _make


@pytest.fixture
def png_bytes():
    return make_image_bytes()


@pytest.fixture
def temp_db(tmp_path):
    from transcoder import db

    db.set_database_url(f"sqlite:///{tmp_path / 'test.db'}")
    db.init_db()
    yield db
    db.set_database_url(f"sqlite:///{tmp_path / 'unused.db'}")
