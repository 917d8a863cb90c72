"""Concrete conversion stages and the objects they resolve.

Every stage result is index-correspondent with its section: ``result[i]``
resolves ``records[i]``. Downstream stages look dependencies up by the
integer index found in a record and nothing else.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

import numpy as np

from glimport.accessors import decode_accessor
from glimport.errors import RecordError, ReferenceError, UnsupportedFeatureError
from glimport.graph import SceneNode
from glimport.models import Image, TextureInfo
from glimport.pipeline import Finalizer, Stage, StageContext, StageGraph, fan_out
from glimport.resolver import parse_data_uri

ANIMATION_PATHS: frozenset[str] = frozenset({"translation", "rotation", "scale", "weights"})

SPECULAR_GLOSSINESS = "KHR_materials_pbrSpecularGlossiness"
UNLIT = "KHR_materials_unlit"
TEXTURE_TRANSFORM = "KHR_texture_transform"
DRACO = "KHR_draco_mesh_compression"
TEXTURE_SOURCE_EXTENSIONS: tuple[str, ...] = ("KHR_texture_basisu", "EXT_texture_webp")

_IMAGE_SIGNATURES: tuple[tuple[bytes, str], ...] = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"\xabKTX 20\xbb", "image/ktx2"),
)


def resolve_index(items: Sequence, index: int, *, owner: str, target: str) -> Any:
    """Return ``items[index]`` or raise ReferenceError; negative indices never wrap."""
    if not 0 <= index < len(items):
        raise ReferenceError(
            f"{owner} references {target} {index}, but only {len(items)} exist"
        )
    return items[index]


def _progress(i: int, total: int) -> float:
    return (i + 1) / total


# Result types


@dataclass(eq=False)
class BufferData:
    index: int
    byte_length: int
    uri: str | None
    _data: memoryview | None = field(default=None, repr=False)

    @property
    def released(self) -> bool:
        return self._data is None

    @property
    def data(self) -> memoryview:
        if self._data is None:
            raise RecordError(f"buffer {self.index} has been released")
        return self._data

    def release(self) -> None:
        self._data = None


@dataclass(eq=False)
class BufferViewData:
    index: int
    buffer: int
    byte_offset: int
    byte_length: int
    byte_stride: int | None
    target: int | None
    _data: memoryview | None = field(default=None, repr=False)

    @property
    def data(self) -> memoryview:
        if self._data is None:
            raise RecordError(f"bufferView {self.index} has been released")
        return self._data

    def release(self) -> None:
        self._data = None


@dataclass(eq=False)
class ImageData:
    index: int
    name: str | None
    mime_type: str | None
    data: bytes = field(repr=False)
    uri: str | None = None


@dataclass(eq=False)
class SamplerData:
    index: int
    mag_filter: int | None
    min_filter: int | None
    wrap_s: int
    wrap_t: int


@dataclass(eq=False)
class TextureData:
    index: int
    name: str | None
    image: ImageData | None
    sampler: SamplerData | None


@dataclass(eq=False)
class TextureRef:
    texture: TextureData
    tex_coord: int = 0
    scale: float = 1.0
    transform: dict | None = None


@dataclass(eq=False)
class MaterialData:
    index: int
    name: str | None
    shader: str
    base_color: tuple[float, ...]
    metallic: float
    roughness: float
    emissive: tuple[float, ...]
    alpha_mode: str
    alpha_cutoff: float
    double_sided: bool
    base_color_texture: TextureRef | None = None
    metallic_roughness_texture: TextureRef | None = None
    normal_texture: TextureRef | None = None
    occlusion_texture: TextureRef | None = None
    emissive_texture: TextureRef | None = None
    specular: tuple[float, ...] | None = None
    glossiness: float | None = None
    specular_glossiness_texture: TextureRef | None = None


@dataclass(eq=False)
class PrimitiveData:
    attributes: dict[str, np.ndarray]
    indices: np.ndarray | None
    material: MaterialData | None
    mode: int
    targets: list[dict[str, np.ndarray]] = field(default_factory=list)


@dataclass(eq=False)
class MeshData:
    index: int
    name: str | None
    primitives: list[PrimitiveData]
    weights: list[float] | None = None


@dataclass(eq=False)
class SkinData:
    index: int
    name: str | None
    joints: list[int]
    inverse_bind_matrices: np.ndarray
    skeleton: int | None = None


@dataclass(eq=False)
class CameraData:
    index: int
    name: str | None
    type: str
    znear: float
    zfar: float | None
    yfov: float | None = None
    aspect_ratio: float | None = None
    xmag: float | None = None
    ymag: float | None = None


@dataclass(eq=False)
class AnimationChannelData:
    node: SceneNode
    path: str
    interpolation: str
    times: np.ndarray
    values: np.ndarray


@dataclass(eq=False)
class AnimationClip:
    index: int
    name: str | None
    channels: list[AnimationChannelData]
    duration: float
    legacy: bool = False


# Stages


class BufferStage(Stage):
    name = "buffers"
    section = "buffers"

    def prepare(self, ctx: StageContext, inputs: Mapping[str, list]) -> list[memoryview]:
        def load(i: int, record) -> memoryview:
            if record.uri is None:
                if i != 0:
                    raise RecordError(
                        f"buffer {i} has no uri; only buffer 0 may refer to the BIN chunk"
                    )
                if ctx.bin_chunk is None:
                    raise RecordError(f"buffer {i} has no uri and the document has no BIN chunk")
                data = ctx.bin_chunk
            else:
                data = memoryview(ctx.resolver.read(record.uri))
            if len(data) < record.byte_length:
                raise RecordError(
                    f"buffer {i} declares {record.byte_length} bytes, only {len(data)} available"
                )
            return data[: record.byte_length]

        return fan_out(load, self.records(ctx), ctx.settings.max_workers)

    def finalize(self, ctx: StageContext, inputs: Mapping[str, list], prepared: Any) -> Finalizer:
        records = self.records(ctx)
        results: list[BufferData] = []
        for i, (record, data) in enumerate(zip(records, prepared)):
            results.append(
                BufferData(index=i, byte_length=record.byte_length, uri=record.uri, _data=data)
            )
            yield _progress(i, len(records))
        return results

    def release(self, ctx: StageContext, result: list) -> None:
        for buffer in result:
            buffer.release()
        ctx.bin_chunk = None


class BufferViewStage(Stage):
    name = "buffer_views"
    depends_on = ("buffers",)
    section = "buffer_views"
    borrows_input = True

    def finalize(self, ctx: StageContext, inputs: Mapping[str, list], prepared: Any) -> Finalizer:
        buffers = inputs["buffers"]
        records = self.records(ctx)
        results: list[BufferViewData] = []
        for i, record in enumerate(records):
            buffer = resolve_index(buffers, record.buffer, owner=f"bufferView {i}", target="buffer")
            end = record.byte_offset + record.byte_length
            if record.byte_offset < 0 or end > len(buffer.data):
                raise RecordError(
                    f"bufferView {i} spans bytes [{record.byte_offset}, {end}) "
                    f"of buffer {record.buffer}, which holds {len(buffer.data)}"
                )
            results.append(
                BufferViewData(
                    index=i,
                    buffer=record.buffer,
                    byte_offset=record.byte_offset,
                    byte_length=record.byte_length,
                    byte_stride=record.byte_stride,
                    target=record.target,
                    _data=buffer.data[record.byte_offset : end],
                )
            )
            yield _progress(i, len(records))
        return results

    def release(self, ctx: StageContext, result: list) -> None:
        for view in result:
            view.release()


class AccessorStage(Stage):
    name = "accessors"
    depends_on = ("buffer_views",)
    section = "accessors"

    def finalize(self, ctx: StageContext, inputs: Mapping[str, list], prepared: Any) -> Finalizer:
        views = inputs["buffer_views"]
        records = self.records(ctx)
        results: list[np.ndarray] = []
        for i, record in enumerate(records):
            results.append(decode_accessor(i, record, views))
            yield _progress(i, len(records))
        return results


def sniff_mime_type(data: bytes) -> str | None:
    for signature, mime_type in _IMAGE_SIGNATURES:
        if data.startswith(signature):
            return mime_type
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


class ImageStage(Stage):
    name = "images"
    depends_on = ("buffer_views",)
    section = "images"

    def prepare(self, ctx: StageContext, inputs: Mapping[str, list]) -> list[tuple[bytes, str | None]]:
        views = inputs["buffer_views"]

        def load(i: int, record: Image) -> tuple[bytes, str | None]:
            if record.buffer_view is not None:
                view = resolve_index(
                    views, record.buffer_view, owner=f"image {i}", target="bufferView"
                )
                return bytes(view.data), record.mime_type
            if record.uri is None:
                raise RecordError(f"image {i} has neither uri nor bufferView")
            if record.uri.startswith("data:"):
                mime_type, data = parse_data_uri(record.uri)
                return data, record.mime_type or mime_type
            return ctx.resolver.read(record.uri), record.mime_type

        return fan_out(load, self.records(ctx), ctx.settings.max_workers)

    def finalize(self, ctx: StageContext, inputs: Mapping[str, list], prepared: Any) -> Finalizer:
        records = self.records(ctx)
        results: list[ImageData] = []
        for i, (record, (data, mime_type)) in enumerate(zip(records, prepared)):
            results.append(
                ImageData(
                    index=i,
                    name=record.name,
                    mime_type=mime_type or sniff_mime_type(data),
                    data=data,
                    uri=None if record.uri is None or record.uri.startswith("data:") else record.uri,
                )
            )
            yield _progress(i, len(records))
        return results


class SamplerStage(Stage):
    name = "samplers"
    section = "samplers"

    def finalize(self, ctx: StageContext, inputs: Mapping[str, list], prepared: Any) -> Finalizer:
        records = self.records(ctx)
        results = [
            SamplerData(
                index=i,
                mag_filter=record.mag_filter,
                min_filter=record.min_filter,
                wrap_s=record.wrap_s,
                wrap_t=record.wrap_t,
            )
            for i, record in enumerate(records)
        ]
        if results:
            yield 1.0
        return results


class TextureStage(Stage):
    name = "textures"
    depends_on = ("images", "samplers")
    section = "textures"

    def finalize(self, ctx: StageContext, inputs: Mapping[str, list], prepared: Any) -> Finalizer:
        images = inputs["images"]
        samplers = inputs["samplers"]
        records = self.records(ctx)
        results: list[TextureData] = []
        for i, record in enumerate(records):
            source = record.source
            if source is None:
                for ext_name in TEXTURE_SOURCE_EXTENSIONS:
                    ext = (record.extensions or {}).get(ext_name)
                    if ext is not None and ext.get("source") is not None:
                        source = ext["source"]
                        break
            image = None
            if source is not None:
                image = resolve_index(images, source, owner=f"texture {i}", target="image")
            sampler = None
            if record.sampler is not None:
                sampler = resolve_index(
                    samplers, record.sampler, owner=f"texture {i}", target="sampler"
                )
            results.append(TextureData(index=i, name=record.name, image=image, sampler=sampler))
            yield _progress(i, len(records))
        return results


class MaterialStage(Stage):
    """Resolves materials; shader names come from ``settings.shader_override_set``."""

    name = "materials"
    depends_on = ("textures",)
    section = "materials"

    def finalize(self, ctx: StageContext, inputs: Mapping[str, list], prepared: Any) -> Finalizer:
        textures = inputs["textures"]
        shaders = ctx.settings.shader_override_set
        records = self.records(ctx)
        results: list[MaterialData | None] = []
        for i, record in enumerate(records):
            if not ctx.settings.enable_materials:
                results.append(None)
                yield _progress(i, len(records))
                continue

            owner = f"material {i}"
            extensions = record.extensions or {}
            spec_gloss = extensions.get(SPECULAR_GLOSSINESS)
            pbr = record.pbr_metallic_roughness
            material = MaterialData(
                index=i,
                name=record.name,
                shader=shaders.select(
                    specular=spec_gloss is not None,
                    blend=record.alpha_mode == "BLEND",
                    unlit=UNLIT in extensions,
                ),
                base_color=tuple(pbr.base_color_factor) if pbr else (1.0, 1.0, 1.0, 1.0),
                metallic=pbr.metallic_factor if pbr else 1.0,
                roughness=pbr.roughness_factor if pbr else 1.0,
                emissive=tuple(record.emissive_factor),
                alpha_mode=record.alpha_mode,
                alpha_cutoff=record.alpha_cutoff,
                double_sided=record.double_sided,
                normal_texture=_texture_ref(
                    textures, record.normal_texture, owner, "normalTexture"
                ),
                occlusion_texture=_texture_ref(
                    textures, record.occlusion_texture, owner, "occlusionTexture"
                ),
                emissive_texture=_texture_ref(
                    textures, record.emissive_texture, owner, "emissiveTexture"
                ),
            )
            if pbr is not None:
                material.base_color_texture = _texture_ref(
                    textures, pbr.base_color_texture, owner, "baseColorTexture"
                )
                material.metallic_roughness_texture = _texture_ref(
                    textures, pbr.metallic_roughness_texture, owner, "metallicRoughnessTexture"
                )
            if spec_gloss is not None:
                material.base_color = tuple(spec_gloss.get("diffuseFactor", [1.0, 1.0, 1.0, 1.0]))
                material.specular = tuple(spec_gloss.get("specularFactor", [1.0, 1.0, 1.0]))
                material.glossiness = spec_gloss.get("glossinessFactor", 1.0)
                material.base_color_texture = _texture_ref(
                    textures, spec_gloss.get("diffuseTexture"), owner, "diffuseTexture"
                )
                material.specular_glossiness_texture = _texture_ref(
                    textures,
                    spec_gloss.get("specularGlossinessTexture"),
                    owner,
                    "specularGlossinessTexture",
                )
            results.append(material)
            yield _progress(i, len(records))
        return results


def _texture_ref(
    textures: Sequence[TextureData],
    info: TextureInfo | dict | None,
    owner: str,
    slot: str,
) -> TextureRef | None:
    if info is None:
        return None
    if isinstance(info, dict):
        info = TextureInfo.model_validate(info)
    texture = resolve_index(textures, info.index, owner=f"{owner} {slot}", target="texture")
    scale = getattr(info, "scale", None)
    if scale is None:
        scale = getattr(info, "strength", 1.0)
    transform = (info.extensions or {}).get(TEXTURE_TRANSFORM)
    tex_coord = info.tex_coord
    if transform is not None and "texCoord" in transform:
        tex_coord = transform["texCoord"]
    return TextureRef(texture=texture, tex_coord=tex_coord, scale=scale, transform=transform)


class MeshStage(Stage):
    name = "meshes"
    depends_on = ("accessors", "materials")
    section = "meshes"

    def finalize(self, ctx: StageContext, inputs: Mapping[str, list], prepared: Any) -> Finalizer:
        accessors = inputs["accessors"]
        materials = inputs["materials"]
        records = self.records(ctx)
        results: list[MeshData] = []
        for i, record in enumerate(records):
            primitives: list[PrimitiveData] = []
            for p, prim in enumerate(record.primitives):
                owner = f"mesh {i} primitive {p}"
                if DRACO in (prim.extensions or {}):
                    raise UnsupportedFeatureError(f"{owner} uses {DRACO}")

                def accessor(index: int, what: str) -> np.ndarray:
                    return resolve_index(accessors, index, owner=f"{owner} {what}", target="accessor")

                attributes = {
                    semantic: accessor(index, semantic)
                    for semantic, index in prim.attributes.items()
                }
                indices = None
                if prim.indices is not None:
                    indices = accessor(prim.indices, "indices").reshape(-1).astype(np.uint32)
                material = None
                if prim.material is not None:
                    material = resolve_index(materials, prim.material, owner=owner, target="material")
                targets = [
                    {semantic: accessor(index, f"target {semantic}") for semantic, index in target.items()}
                    for target in prim.targets or []
                ]
                primitives.append(
                    PrimitiveData(
                        attributes=attributes,
                        indices=indices,
                        material=material,
                        mode=prim.mode,
                        targets=targets,
                    )
                )
            results.append(
                MeshData(index=i, name=record.name, primitives=primitives, weights=record.weights)
            )
            yield _progress(i, len(records))
        return results


class SkinStage(Stage):
    name = "skins"
    depends_on = ("accessors",)
    section = "skins"

    def finalize(self, ctx: StageContext, inputs: Mapping[str, list], prepared: Any) -> Finalizer:
        accessors = inputs["accessors"]
        node_count = len(ctx.asset.nodes)
        records = self.records(ctx)
        results: list[SkinData] = []
        for i, record in enumerate(records):
            owner = f"skin {i}"
            for joint in record.joints:
                if not 0 <= joint < node_count:
                    raise ReferenceError(
                        f"{owner} references joint node {joint}, but only {node_count} exist"
                    )
            if record.skeleton is not None and not 0 <= record.skeleton < node_count:
                raise ReferenceError(
                    f"{owner} references skeleton node {record.skeleton}, "
                    f"but only {node_count} exist"
                )
            if record.inverse_bind_matrices is None:
                matrices = np.tile(np.eye(4, dtype=np.float32), (len(record.joints), 1, 1))
            else:
                matrices = resolve_index(
                    accessors,
                    record.inverse_bind_matrices,
                    owner=f"{owner} inverseBindMatrices",
                    target="accessor",
                )
                if matrices.shape[1:] != (4, 4):
                    raise RecordError(f"{owner} inverseBindMatrices must be MAT4")
                if len(matrices) != len(record.joints):
                    raise RecordError(
                        f"{owner} has {len(record.joints)} joints "
                        f"but {len(matrices)} inverse bind matrices"
                    )
            results.append(
                SkinData(
                    index=i,
                    name=record.name,
                    joints=list(record.joints),
                    inverse_bind_matrices=matrices,
                    skeleton=record.skeleton,
                )
            )
            yield _progress(i, len(records))
        return results


class CameraStage(Stage):
    name = "cameras"
    section = "cameras"

    def finalize(self, ctx: StageContext, inputs: Mapping[str, list], prepared: Any) -> Finalizer:
        records = self.records(ctx)
        results: list[CameraData] = []
        for i, record in enumerate(records):
            if record.type == "perspective" and record.perspective is not None:
                p = record.perspective
                camera = CameraData(
                    index=i,
                    name=record.name,
                    type=record.type,
                    znear=p.znear,
                    zfar=p.zfar,
                    yfov=p.yfov,
                    aspect_ratio=p.aspect_ratio,
                )
            elif record.type == "orthographic" and record.orthographic is not None:
                o = record.orthographic
                camera = CameraData(
                    index=i,
                    name=record.name,
                    type=record.type,
                    znear=o.znear,
                    zfar=o.zfar,
                    xmag=o.xmag,
                    ymag=o.ymag,
                )
            else:
                raise UnsupportedFeatureError(
                    f"camera {i} has type {record.type!r} without matching projection"
                )
            results.append(camera)
            yield _progress(i, len(records))
        return results


def trs_matrix(
    translation: Sequence[float] | None,
    rotation: Sequence[float] | None,
    scale: Sequence[float] | None,
) -> np.ndarray:
    """Compose T * R * S; ``rotation`` is a unit quaternion (x, y, z, w)."""
    matrix = np.eye(4)
    if rotation is not None:
        x, y, z, w = rotation
        matrix[:3, :3] = [
            [1 - 2 * (y * y + z * z), 2 * (x * y - z * w), 2 * (x * z + y * w)],
            [2 * (x * y + z * w), 1 - 2 * (x * x + z * z), 2 * (y * z - x * w)],
            [2 * (x * z - y * w), 2 * (y * z + x * w), 1 - 2 * (x * x + y * y)],
        ]
    if scale is not None:
        matrix[:3, :3] = matrix[:3, :3] @ np.diag(scale)
    if translation is not None:
        matrix[:3, 3] = translation
    return matrix


class NodeStage(Stage):
    name = "nodes"
    depends_on = ("meshes", "skins", "cameras")
    section = "nodes"

    def finalize(self, ctx: StageContext, inputs: Mapping[str, list], prepared: Any) -> Finalizer:
        meshes = inputs["meshes"]
        skins = inputs["skins"]
        cameras = inputs["cameras"]
        records = self.records(ctx)
        nodes: list[SceneNode] = []
        for i, record in enumerate(records):
            owner = f"node {i}"
            if record.matrix is not None:
                if len(record.matrix) != 16:
                    raise RecordError(f"{owner} matrix has {len(record.matrix)} values, expected 16")
                matrix = np.array(record.matrix, dtype=float).reshape(4, 4).T
            else:
                matrix = trs_matrix(record.translation, record.rotation, record.scale)
            nodes.append(
                SceneNode(
                    index=i,
                    name=record.name,
                    matrix=matrix,
                    mesh=None
                    if record.mesh is None
                    else resolve_index(meshes, record.mesh, owner=owner, target="mesh"),
                    skin=None
                    if record.skin is None
                    else resolve_index(skins, record.skin, owner=owner, target="skin"),
                    camera=None
                    if record.camera is None
                    else resolve_index(cameras, record.camera, owner=owner, target="camera"),
                    weights=record.weights,
                    extras=record.extras,
                )
            )
            yield _progress(i, 2 * len(records))

        for i, record in enumerate(records):
            for child_index in record.children:
                child = resolve_index(nodes, child_index, owner=f"node {i}", target="child node")
                if child_index == i:
                    raise RecordError(f"node {i} lists itself as a child")
                if child.parent is not None:
                    raise RecordError(f"node {child_index} has more than one parent")
                child.parent = nodes[i]
                nodes[i].children.append(child)
            yield _progress(len(records) + i, 2 * len(records))

        reachable = sum(1 for node in nodes if node.parent is None for _ in node.walk())
        if reachable != len(nodes):
            raise RecordError("node hierarchy contains a cycle")
        return nodes


class AnimationStage(Stage):
    name = "animations"
    depends_on = ("accessors", "nodes")
    section = "animations"

    def finalize(self, ctx: StageContext, inputs: Mapping[str, list], prepared: Any) -> Finalizer:
        accessors = inputs["accessors"]
        nodes = inputs["nodes"]
        legacy = ctx.settings.use_legacy_animation_clips
        records = self.records(ctx)
        results: list[AnimationClip] = []
        for i, record in enumerate(records):
            channels: list[AnimationChannelData] = []
            duration = 0.0
            for c, channel in enumerate(record.channels):
                owner = f"animation {i} channel {c}"
                if channel.target.node is None:
                    continue
                if channel.target.path not in ANIMATION_PATHS:
                    raise UnsupportedFeatureError(
                        f"{owner} targets unsupported path {channel.target.path!r}"
                    )
                sampler = resolve_index(record.samplers, channel.sampler, owner=owner, target="sampler")
                times = resolve_index(
                    accessors, sampler.input, owner=f"{owner} input", target="accessor"
                ).reshape(-1)
                values = resolve_index(
                    accessors, sampler.output, owner=f"{owner} output", target="accessor"
                )
                node = resolve_index(nodes, channel.target.node, owner=owner, target="node")
                if len(times):
                    duration = max(duration, float(times.max()))
                channels.append(
                    AnimationChannelData(
                        node=node,
                        path=channel.target.path,
                        interpolation=sampler.interpolation,
                        times=times,
                        values=values,
                    )
                )
            results.append(
                AnimationClip(
                    index=i,
                    name=record.name,
                    channels=channels,
                    duration=duration,
                    legacy=legacy,
                )
            )
            yield _progress(i, len(records))
        return results


DEFAULT_STAGES: tuple[type[Stage], ...] = (
    BufferStage,
    BufferViewStage,
    AccessorStage,
    ImageStage,
    SamplerStage,
    TextureStage,
    MaterialStage,
    MeshStage,
    SkinStage,
    CameraStage,
    NodeStage,
    AnimationStage,
)


def build_stage_graph() -> StageGraph:
    """Build the fixed import pipeline in dependency order."""
    return StageGraph(stage_cls() for stage_cls in DEFAULT_STAGES)
