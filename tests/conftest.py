"""Shared fixtures for glimport tests."""

import copy

import pytest

from glb_builders import EMPTY_SECTIONS, make_glb, rigged_asset, triangle_asset


@pytest.fixture
def empty_document():
    return copy.deepcopy(EMPTY_SECTIONS)


@pytest.fixture
def empty_glb(empty_document):
    return make_glb(empty_document)


@pytest.fixture
def triangle_document():
    return triangle_asset()


@pytest.fixture
def triangle_glb(triangle_document):
    doc, blob = triangle_document
    return make_glb(doc, blob)


@pytest.fixture
def rigged_glb():
    doc, blob = rigged_asset()
    return make_glb(doc, blob)


@pytest.fixture
def glb_file(tmp_path, triangle_glb):
    path = tmp_path / "triangle.glb"
    path.write_bytes(triangle_glb)
    return path
