"""Shared test fixtures."""

import shutil
import tempfile

import numpy as np
import pytest
from PIL import Image

from TexComposer.config import PipelineConfig


@pytest.fixture
def tmp_dir():
    d = tempfile.mkdtemp()
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def default_config():
    return PipelineConfig()


def save_test_png(path, arr):
    """Write a uint8/uint16 array as PNG with Pillow and return it."""
    Image.fromarray(np.ascontiguousarray(arr)).save(path)
    return arr
