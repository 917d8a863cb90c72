"""Decode accessor data into numpy arrays."""

from __future__ import annotations

from typing import Sequence

import numpy as np
import pygltflib

from glimport.errors import RecordError, ReferenceError, UnsupportedFeatureError
from glimport.models import Accessor

COMPONENT_DTYPES: dict[int, np.dtype] = {
    pygltflib.BYTE: np.dtype("<i1"),
    pygltflib.UNSIGNED_BYTE: np.dtype("<u1"),
    pygltflib.SHORT: np.dtype("<i2"),
    pygltflib.UNSIGNED_SHORT: np.dtype("<u2"),
    pygltflib.UNSIGNED_INT: np.dtype("<u4"),
    pygltflib.FLOAT: np.dtype("<f4"),
}

ELEMENT_SHAPES: dict[str, tuple[int, ...]] = {
    pygltflib.SCALAR: (),
    pygltflib.VEC2: (2,),
    pygltflib.VEC3: (3,),
    pygltflib.VEC4: (4,),
    pygltflib.MAT2: (2, 2),
    pygltflib.MAT3: (3, 3),
    pygltflib.MAT4: (4, 4),
}

# normalized integer -> float divisor and lower clamp
_NORMALIZE: dict[int, tuple[float, float]] = {
    pygltflib.BYTE: (127.0, -1.0),
    pygltflib.UNSIGNED_BYTE: (255.0, 0.0),
    pygltflib.SHORT: (32767.0, -1.0),
    pygltflib.UNSIGNED_SHORT: (65535.0, 0.0),
}


def component_dtype(component_type: int) -> np.dtype:
    try:
        return COMPONENT_DTYPES[component_type]
    except KeyError:
        raise UnsupportedFeatureError(f"Unsupported component type: {component_type}") from None


def element_shape(type_name: str) -> tuple[int, ...]:
    try:
        return ELEMENT_SHAPES[type_name]
    except KeyError:
        raise UnsupportedFeatureError(f"Unsupported accessor type: {type_name!r}") from None


def _column_padding(dtype: np.dtype, shape: tuple[int, ...]) -> int:
    """Bytes per matrix column after alignment to 4 (MAT2/MAT3 of 1- and 2-byte components)."""
    if len(shape) != 2:
        return 0
    column = shape[0] * dtype.itemsize
    return -column % 4


def read_elements(
    data: memoryview,
    byte_offset: int,
    count: int,
    dtype: np.dtype,
    shape: tuple[int, ...],
    byte_stride: int | None = None,
) -> np.ndarray:
    """Copy ``count`` elements out of ``data`` honouring an optional byte stride."""
    n_components = int(np.prod(shape)) if shape else 1
    padding = _column_padding(dtype, shape)
    element_size = n_components * dtype.itemsize + padding * (shape[1] if padding else 0)
    stride = byte_stride or element_size
    if count == 0:
        return np.zeros((0, *shape), dtype=dtype)
    needed = byte_offset + stride * (count - 1) + element_size
    if needed > len(data):
        raise RecordError(f"needs {needed} bytes but the buffer view holds {len(data)}")

    raw = np.frombuffer(data, dtype=np.uint8, count=needed - byte_offset, offset=byte_offset)
    rows = np.lib.stride_tricks.as_strided(raw, shape=(count, element_size), strides=(stride, 1))
    if padding:
        column_bytes = shape[0] * dtype.itemsize
        rows = rows.reshape(count, shape[1], column_bytes + padding)[:, :, :column_bytes]
    values = np.ascontiguousarray(rows).view(dtype).reshape(count, n_components)
    if len(shape) == 2:
        # glTF matrices are column-major
        return values.reshape(count, shape[1], shape[0]).transpose(0, 2, 1).copy()
    return values.reshape((count, *shape))


def normalize(values: np.ndarray, component_type: int) -> np.ndarray:
    if component_type not in _NORMALIZE:
        return values.astype(np.float32)
    divisor, lower = _NORMALIZE[component_type]
    return np.maximum(values.astype(np.float32) / divisor, lower)


def decode_accessor(
    index: int,
    accessor: Accessor,
    views: Sequence,
) -> np.ndarray:
    """Decode accessor ``index`` using the resolved buffer views.

    Accessors without a buffer view decode to zeros; sparse substitutions are
    applied on top of the dense values.

    Raises:
        ReferenceError: On out-of-range buffer view indices.
        RecordError: When data runs past the end of a buffer view.
        UnsupportedFeatureError: On unknown component or element types.
    """
    dtype = component_dtype(accessor.component_type)
    shape = element_shape(accessor.type)

    if accessor.buffer_view is None:
        values = np.zeros((accessor.count, *shape), dtype=dtype)
    else:
        view = _view(views, accessor.buffer_view, index, "bufferView")
        try:
            values = read_elements(
                view.data, accessor.byte_offset, accessor.count, dtype, shape, view.byte_stride
            )
        except RecordError as e:
            raise RecordError(f"accessor {index}: {e}") from None

    if accessor.sparse is not None:
        values = _apply_sparse(index, accessor, values, views, dtype, shape)

    if accessor.normalized:
        values = normalize(values, accessor.component_type)
    return values


def _view(views: Sequence, view_index: int, accessor_index: int, what: str):
    if not 0 <= view_index < len(views):
        raise ReferenceError(
            f"accessor {accessor_index} references {what} {view_index}, "
            f"but only {len(views)} exist"
        )
    return views[view_index]


def _apply_sparse(
    index: int,
    accessor: Accessor,
    values: np.ndarray,
    views: Sequence,
    dtype: np.dtype,
    shape: tuple[int, ...],
) -> np.ndarray:
    sparse = accessor.sparse
    index_view = _view(views, sparse.indices.buffer_view, index, "sparse indices bufferView")
    value_view = _view(views, sparse.values.buffer_view, index, "sparse values bufferView")
    try:
        targets = read_elements(
            index_view.data,
            sparse.indices.byte_offset,
            sparse.count,
            component_dtype(sparse.indices.component_type),
            (),
        )
        substitutes = read_elements(
            value_view.data, sparse.values.byte_offset, sparse.count, dtype, shape
        )
    except RecordError as e:
        raise RecordError(f"accessor {index} sparse: {e}") from None
    if sparse.count and int(targets.max()) >= accessor.count:
        raise RecordError(
            f"accessor {index} sparse index {int(targets.max())} exceeds count {accessor.count}"
        )
    values = values.copy()
    values[targets.astype(np.intp)] = substitutes
    return values
