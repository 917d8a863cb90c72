"""Tests for format detection, document decoding and the load entry points."""

import json
import warnings

import numpy as np
import pygltflib
import pytest
from numpy.testing import assert_allclose

from glb_builders import FAKE_PNG, TRIANGLE_POSITIONS, make_glb, triangle_asset
from glimport.container import Format
from glimport.errors import (
    BadMagicError,
    FetchError,
    FormatError,
    ParseError,
    UnsupportedFeatureError,
    ValidationError,
)
from glimport.importer import (
    check_extensions,
    detect_format,
    load,
    load_bytes,
    open_document,
    parse_asset,
)
from glimport.settings import ImportSettings
from glimport.warning_policy import GlimportWarning, WarningPolicy


class FakeFetcher:
    """Serves fixed payloads by URL and records every request."""

    def __init__(self, payloads: dict[str, bytes]):
        self.payloads = payloads
        self.requests: list[tuple[str, dict]] = []

    def fetch(self, url, headers):
        self.requests.append((url, dict(headers)))
        if url not in self.payloads:
            raise FetchError(f"Request to {url} failed with HTTP 404")
        return self.payloads[url]


def _codes(caught) -> list[str]:
    return [w.message.code for w in caught if isinstance(w.message, GlimportWarning)]


def _gltf_with_sidecar(tmp_path, bin_name="scene.bin"):
    doc, blob = triangle_asset()
    doc["buffers"][0]["uri"] = bin_name.replace(" ", "%20")
    doc["images"] = [{"uri": "textures/albedo.png"}]
    (tmp_path / bin_name).write_bytes(blob)
    (tmp_path / "textures").mkdir()
    (tmp_path / "textures" / "albedo.png").write_bytes(FAKE_PNG)
    path = tmp_path / "scene.gltf"
    path.write_text(json.dumps(doc))
    return path, doc, blob


class TestDetectFormat:
    @pytest.mark.parametrize(
        "source, expected",
        [
            ("model.glb", Format.GLB),
            ("model.GLB", Format.GLB),
            ("dir/model.gltf", Format.GLTF),
            ("https://example.com/a/model.glb?token=1", Format.GLB),
            ("model.obj", None),
            ("model", None),
        ],
    )
    def test_by_extension(self, source, expected):
        assert detect_format(source) is expected

    def test_bytes_sniffed(self, triangle_glb):
        assert detect_format(triangle_glb) is Format.GLB
        assert detect_format(b'{"asset":{"version":"2.0"}}') is Format.GLTF


class TestUnrecognizedFormat:
    def test_bytes_warn_and_return_none(self):
        with warnings.catch_warnings(record=True) as w:
            warnings.simplefilter("always")
            assert load(b"\x00\x01\x02 not an asset") is None
        assert _codes(w) == ["W03"]

    def test_path_not_read(self, tmp_path):
        with warnings.catch_warnings(record=True) as w:
            warnings.simplefilter("always")
            assert load(tmp_path / "missing.obj") is None
        assert _codes(w) == ["W03"]

    def test_as_error(self):
        policy = WarningPolicy(warn_as_error=frozenset({"W03"}))
        with pytest.raises(ValidationError, match=r"\[W03\]"):
            load(b"\x00junk", warning_policy=policy)

    def test_explicit_format_skips_detection(self, triangle_glb, tmp_path):
        path = tmp_path / "asset.bin"
        path.write_bytes(triangle_glb)
        graph = load(path, fmt=Format.GLB)
        assert graph.find("triangle") is not None


class TestGlbDecoding:
    def test_bad_magic_file(self, tmp_path):
        path = tmp_path / "broken.glb"
        path.write_bytes(make_glb("not json at all", magic=b"XXXX"))
        with pytest.raises(BadMagicError):
            load(path)

    def test_bad_magic_forced_format(self):
        with pytest.raises(BadMagicError):
            load(make_glb("{}", magic=b"XXXX"), fmt=Format.GLB)

    def test_invalid_json(self):
        with pytest.raises(ParseError, match="Invalid glTF document"):
            load(make_glb("{not json"))

    def test_wrong_record_shape(self):
        with pytest.raises(ParseError):
            load(make_glb({"nodes": "three"}))

    def test_file_path(self, glb_file):
        graph = load(glb_file)
        assert [child.name for child in graph.root.children] == ["triangle"]

    def test_string_path(self, glb_file):
        assert load(str(glb_file)).find("triangle") is not None

    def test_missing_file(self, tmp_path):
        with pytest.raises(FetchError, match="Cannot read file"):
            load(tmp_path / "missing.glb")


class TestParseAsset:
    def test_camel_case_and_defaults(self):
        asset = parse_asset(
            '{"bufferViews":[{"buffer":0,"byteLength":4}],"accessors":[{"componentType":5126,'
            '"count":1,"type":"SCALAR"}]}'
        )
        assert asset.buffer_views[0].byte_offset == 0
        assert asset.accessors[0].buffer_view is None
        assert asset.asset.version == "2.0"

    def test_null_reads_as_absent(self):
        asset = parse_asset('{"nodes":[{"name":null,"children":null}]}')
        assert asset.nodes[0].name is None
        assert asset.nodes[0].children == []

    def test_unknown_keys_kept(self):
        asset = parse_asset('{"nodes":[{"vendorData":{"id":7}}],"extras":{"author":"x"}}')
        assert asset.nodes[0].model_extra == {"vendorData": {"id": 7}}
        assert asset.extras == {"author": "x"}

    def test_section_counts(self):
        doc, _ = triangle_asset()
        counts = parse_asset(json.dumps(doc)).section_counts()
        assert counts["bufferViews"] == 2
        assert counts["nodes"] == 1
        assert counts["cameras"] == 0


class TestExtensions:
    def test_unsupported_required(self):
        asset = parse_asset('{"extensionsRequired":["EXT_meshopt_compression"]}')
        with pytest.raises(UnsupportedFeatureError, match="EXT_meshopt_compression"):
            check_extensions(asset)

    def test_required_draco_hint(self):
        with pytest.raises(UnsupportedFeatureError, match="compressed meshes"):
            load(make_glb({"extensionsRequired": ["KHR_draco_mesh_compression"]}))

    def test_supported_required(self):
        asset = parse_asset(
            '{"extensionsUsed":["KHR_texture_transform"],'
            '"extensionsRequired":["KHR_texture_transform"]}'
        )
        with warnings.catch_warnings(record=True) as w:
            warnings.simplefilter("always")
            check_extensions(asset)
        assert _codes(w) == []

    def test_unsupported_optional_warns(self):
        with warnings.catch_warnings(record=True) as w:
            warnings.simplefilter("always")
            graph = load(make_glb({"extensionsUsed": ["KHR_lights_punctual"]}))
        assert graph is not None
        assert _codes(w) == ["W04"]
        assert "KHR_lights_punctual" in str(w[0].message)

    def test_unsupported_optional_suppressed(self):
        policy = WarningPolicy(suppress=frozenset({"W04"}))
        with warnings.catch_warnings(record=True) as w:
            warnings.simplefilter("always")
            load(make_glb({"extensionsUsed": ["KHR_lights_punctual"]}), warning_policy=policy)
        assert _codes(w) == []


class TestGltfDocuments:
    def test_sibling_files(self, tmp_path):
        path, _, _ = _gltf_with_sidecar(tmp_path)
        graph = load(path)
        assert_allclose(graph.meshes[0].primitives[0].attributes["POSITION"], TRIANGLE_POSITIONS)
        assert graph.images[0].data == FAKE_PNG
        assert graph.images[0].mime_type == "image/png"
        assert graph.images[0].uri == "textures/albedo.png"

    def test_percent_encoded_uri(self, tmp_path):
        path, _, _ = _gltf_with_sidecar(tmp_path, bin_name="scene data.bin")
        assert load(path).meshes[0].name == "tri"

    def test_missing_sibling(self, tmp_path):
        path, _, _ = _gltf_with_sidecar(tmp_path)
        (tmp_path / "scene.bin").unlink()
        with pytest.raises(FetchError, match="scene.bin") as exc_info:
            load(path)
        assert exc_info.value.stage == "buffers"

    def test_relative_paths_disabled(self, tmp_path, monkeypatch):
        path, _, _ = _gltf_with_sidecar(tmp_path)
        elsewhere = tmp_path / "elsewhere"
        elsewhere.mkdir()
        monkeypatch.chdir(elsewhere)
        with pytest.raises(FetchError):
            load(path, ImportSettings(resolve_relative_paths=False))

    def test_bytes_with_base_path(self, tmp_path):
        path, _, _ = _gltf_with_sidecar(tmp_path)
        graph = load(path.read_bytes(), base_path=tmp_path)
        assert graph.images[0].data == FAKE_PNG

    def test_byte_order_mark(self, tmp_path):
        path, doc, blob = _gltf_with_sidecar(tmp_path)
        path.write_bytes(b"\xef\xbb\xbf" + json.dumps(doc).encode("utf-8"))
        assert load(path).find("triangle") is not None

    def test_invalid_utf8(self):
        with pytest.raises(FormatError, match="not valid UTF-8"):
            load(b"{\xff\xfe}", fmt=Format.GLTF)

    def test_open_document_has_no_bin_chunk(self, tmp_path):
        path, _, _ = _gltf_with_sidecar(tmp_path)
        document = open_document(path, ImportSettings())
        assert document.bin_chunk is None
        assert document.location == path


class TestRemoteSources:
    def test_url_document_and_resources(self):
        doc, blob = triangle_asset()
        doc["buffers"][0]["uri"] = "scene.bin"
        fetcher = FakeFetcher(
            {
                "https://cdn.example.com/models/scene.gltf": json.dumps(doc).encode("utf-8"),
                "https://cdn.example.com/models/scene.bin": blob,
            }
        )
        settings = ImportSettings(request_headers={"Authorization": "Bearer t"})
        graph = load("https://cdn.example.com/models/scene.gltf", settings, fetcher=fetcher)
        assert graph.find("triangle") is not None
        assert [url for url, _ in fetcher.requests] == [
            "https://cdn.example.com/models/scene.gltf",
            "https://cdn.example.com/models/scene.bin",
        ]
        assert all(headers == {"Authorization": "Bearer t"} for _, headers in fetcher.requests)

    def test_remote_glb(self, triangle_glb):
        fetcher = FakeFetcher({"https://example.com/triangle.glb": triangle_glb})
        graph = load("https://example.com/triangle.glb", fetcher=fetcher)
        assert graph.meshes[0].name == "tri"

    def test_not_local_file(self, triangle_glb):
        fetcher = FakeFetcher({"assets/triangle.glb": triangle_glb})
        settings = ImportSettings(treat_input_as_local_file=False)
        graph = load("assets/triangle.glb", settings, fetcher=fetcher)
        assert graph is not None
        assert fetcher.requests[0][0] == "assets/triangle.glb"

    def test_fetch_failure(self):
        with pytest.raises(FetchError, match="404"):
            load("https://example.com/missing.glb", fetcher=FakeFetcher({}))

    def test_resource_fetch_failure_reports_stage(self):
        doc, _ = triangle_asset()
        doc["buffers"][0]["uri"] = "gone.bin"
        fetcher = FakeFetcher({"https://example.com/m/scene.gltf": json.dumps(doc).encode()})
        with pytest.raises(FetchError) as exc_info:
            load("https://example.com/m/scene.gltf", fetcher=fetcher)
        assert exc_info.value.stage == "buffers"


class TestPygltflibInterop:
    def _build(self) -> bytes:
        positions = TRIANGLE_POSITIONS
        indices = np.array([0, 1, 2], dtype=np.uint16)
        blob = positions.tobytes() + indices.tobytes()
        gltf = pygltflib.GLTF2(
            scene=0,
            scenes=[pygltflib.Scene(nodes=[0])],
            nodes=[pygltflib.Node(name="made", mesh=0, translation=[0.0, 0.0, 5.0])],
            meshes=[
                pygltflib.Mesh(
                    name="triangle",
                    primitives=[
                        pygltflib.Primitive(
                            attributes=pygltflib.Attributes(POSITION=0), indices=1
                        )
                    ],
                )
            ],
            accessors=[
                pygltflib.Accessor(
                    bufferView=0,
                    componentType=pygltflib.FLOAT,
                    count=3,
                    type=pygltflib.VEC3,
                    min=[0.0, 0.0, 0.0],
                    max=[1.0, 1.0, 0.0],
                ),
                pygltflib.Accessor(
                    bufferView=1,
                    componentType=pygltflib.UNSIGNED_SHORT,
                    count=3,
                    type=pygltflib.SCALAR,
                ),
            ],
            bufferViews=[
                pygltflib.BufferView(buffer=0, byteOffset=0, byteLength=positions.nbytes),
                pygltflib.BufferView(
                    buffer=0, byteOffset=positions.nbytes, byteLength=indices.nbytes
                ),
            ],
            buffers=[pygltflib.Buffer(byteLength=len(blob))],
        )
        gltf.set_binary_blob(blob)
        return b"".join(gltf.save_to_bytes())

    def test_loads_exported_glb(self):
        graph = load(self._build())
        node = graph.find("made")
        assert node.matrix[:3, 3].tolist() == [0.0, 0.0, 5.0]
        primitive = node.mesh.primitives[0]
        assert_allclose(primitive.attributes["POSITION"], TRIANGLE_POSITIONS)
        assert primitive.indices.tolist() == [0, 1, 2]


class TestLoadBytes:
    def test_glb_bytes(self, triangle_glb):
        graph = load_bytes(bytearray(triangle_glb))
        assert graph.find("triangle") is not None

    def test_gltf_bytes_with_base_path(self, tmp_path):
        path, _, _ = _gltf_with_sidecar(tmp_path)
        graph = load_bytes(memoryview(path.read_bytes()), base_path=tmp_path)
        assert graph.meshes[0].name == "tri"
