"""Helpers to assemble GLB payloads and small glTF documents for tests."""

from __future__ import annotations

import base64
import json
import struct

import numpy as np

EMPTY_SECTIONS: dict = {
    "buffers": [],
    "bufferViews": [],
    "accessors": [],
    "images": [],
    "textures": [],
    "materials": [],
    "meshes": [],
    "skins": [],
    "nodes": [],
    "cameras": [],
    "animations": [],
}

# 8-byte PNG signature followed by filler; never decoded to pixels
FAKE_PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 8


def make_glb(
    document: dict | str,
    blob: bytes | None = None,
    *,
    magic: bytes = b"glTF",
    version: int = 2,
    chunk_type: bytes = b"JSON",
    declared_length: int | None = None,
    bin_chunk_type: bytes = b"BIN\x00",
) -> bytes:
    """Build a container; the JSON chunk is space-padded to 4 bytes."""
    text = document if isinstance(document, str) else json.dumps(document, separators=(",", ":"))
    json_bytes = text.encode("utf-8")
    json_bytes += b" " * (-len(json_bytes) % 4)
    body = struct.pack("<I4s", len(json_bytes), chunk_type) + json_bytes
    if blob is not None:
        payload = blob + b"\x00" * (-len(blob) % 4)
        body += struct.pack("<I4s", len(payload), bin_chunk_type) + payload
    total = 12 + len(body) if declared_length is None else declared_length
    return struct.pack("<4sII", magic, version, total) + body


def data_uri(payload: bytes, mime_type: str = "application/octet-stream") -> str:
    return f"data:{mime_type};base64," + base64.b64encode(payload).decode("ascii")


class BlobBuilder:
    """Accumulates arrays into one buffer, emitting bufferViews and accessors."""

    def __init__(self) -> None:
        self.blob = bytearray()
        self.buffer_views: list[dict] = []
        self.accessors: list[dict] = []

    def add(self, array: np.ndarray, component_type: int, type_name: str, **accessor) -> int:
        self.blob.extend(b"\x00" * (-len(self.blob) % 4))
        data = np.ascontiguousarray(array).tobytes()
        self.buffer_views.append(
            {"buffer": 0, "byteOffset": len(self.blob), "byteLength": len(data)}
        )
        self.blob.extend(data)
        count = len(array)
        self.accessors.append(
            {
                "bufferView": len(self.buffer_views) - 1,
                "componentType": component_type,
                "count": count,
                "type": type_name,
                **accessor,
            }
        )
        return len(self.accessors) - 1

    def document(self, **sections) -> dict:
        doc = dict(EMPTY_SECTIONS)
        doc["asset"] = {"version": "2.0"}
        doc["buffers"] = [{"byteLength": len(self.blob)}]
        doc["bufferViews"] = self.buffer_views
        doc["accessors"] = self.accessors
        doc.update(sections)
        return doc


TRIANGLE_POSITIONS = np.array([[0, 0, 0], [1, 0, 0], [0, 1, 0]], dtype=np.float32)


def triangle_asset() -> tuple[dict, bytes]:
    builder = BlobBuilder()
    pos = builder.add(TRIANGLE_POSITIONS, 5126, "VEC3", min=[0, 0, 0], max=[1, 1, 0])
    idx = builder.add(np.array([0, 1, 2], dtype=np.uint16), 5123, "SCALAR")
    doc = builder.document(
        scene=0,
        scenes=[{"nodes": [0]}],
        nodes=[{"name": "triangle", "mesh": 0, "translation": [1.0, 2.0, 3.0]}],
        meshes=[
            {
                "name": "tri",
                "primitives": [{"attributes": {"POSITION": pos}, "indices": idx, "material": 0}],
            }
        ],
        materials=[
            {"name": "red", "pbrMetallicRoughness": {"baseColorFactor": [1.0, 0.0, 0.0, 1.0]}}
        ],
    )
    return doc, bytes(builder.blob)


def rigged_asset() -> tuple[dict, bytes]:
    """Two-bone hierarchy with a skinned triangle and one translation animation."""
    builder = BlobBuilder()
    pos = builder.add(TRIANGLE_POSITIONS, 5126, "VEC3")
    idx = builder.add(np.array([0, 1, 2], dtype=np.uint16), 5123, "SCALAR")
    ibm = np.stack([np.eye(4, dtype=np.float32), np.eye(4, dtype=np.float32)])
    ibm[1, 3, 1] = -1.0  # column-major bytes: decodes to row 1, column 3
    ibm_acc = builder.add(ibm, 5126, "MAT4")
    times = builder.add(np.array([0.0, 1.5], dtype=np.float32), 5126, "SCALAR", min=[0.0], max=[1.5])
    values = builder.add(np.array([[0, 1, 0], [0, 2, 0]], dtype=np.float32), 5126, "VEC3")
    doc = builder.document(
        scene=0,
        scenes=[{"nodes": [0, 2]}],
        nodes=[
            {"name": "root", "children": [1]},
            {"name": "bone", "translation": [0.0, 1.0, 0.0]},
            {"name": "body", "mesh": 0, "skin": 0},
        ],
        meshes=[{"primitives": [{"attributes": {"POSITION": pos}, "indices": idx}]}],
        skins=[{"joints": [0, 1], "inverseBindMatrices": ibm_acc, "skeleton": 0}],
        animations=[
            {
                "name": "lift",
                "samplers": [{"input": times, "output": values}],
                "channels": [{"sampler": 0, "target": {"node": 1, "path": "translation"}}],
            }
        ],
    )
    return doc, bytes(builder.blob)
