"""Pydantic v2 models for the glTF 2.0 scene description.

Records are loosely typed: unknown keys are kept, most fields are optional,
and cross-record indices are plain integers checked by the stage that
dereferences them.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

SECTION_NAMES: tuple[str, ...] = (
    "buffers",
    "buffer_views",
    "accessors",
    "images",
    "samplers",
    "textures",
    "materials",
    "meshes",
    "skins",
    "nodes",
    "cameras",
    "animations",
)


def _without_nulls(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: item for key, item in value.items() if item is not None}
    return value


class Record(BaseModel):
    model_config = ConfigDict(
        extra="allow",
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    name: str | None = None
    extensions: dict[str, Any] | None = None
    extras: Any = None

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        # explicit null reads as absent so defaults apply
        return _without_nulls(data)


class AssetInfo(Record):
    version: str = "2.0"
    generator: str | None = None
    min_version: str | None = None
    copyright: str | None = None


class Buffer(Record):
    uri: str | None = None
    byte_length: int = 0


class BufferView(Record):
    buffer: int
    byte_offset: int = 0
    byte_length: int
    byte_stride: int | None = None
    target: int | None = None


class SparseIndices(Record):
    buffer_view: int
    byte_offset: int = 0
    component_type: int


class SparseValues(Record):
    buffer_view: int
    byte_offset: int = 0


class Sparse(Record):
    count: int
    indices: SparseIndices
    values: SparseValues


class Accessor(Record):
    buffer_view: int | None = None
    byte_offset: int = 0
    component_type: int
    normalized: bool = False
    count: int
    type: str
    max: list[float] | None = None
    min: list[float] | None = None
    sparse: Sparse | None = None


class Image(Record):
    uri: str | None = None
    mime_type: str | None = None
    buffer_view: int | None = None


class Sampler(Record):
    mag_filter: int | None = None
    min_filter: int | None = None
    wrap_s: int = 10497
    wrap_t: int = 10497


class Texture(Record):
    sampler: int | None = None
    source: int | None = None


class TextureInfo(Record):
    index: int
    tex_coord: int = 0


class NormalTextureInfo(TextureInfo):
    scale: float = 1.0


class OcclusionTextureInfo(TextureInfo):
    strength: float = 1.0


class PbrMetallicRoughness(Record):
    base_color_factor: list[float] = Field(default_factory=lambda: [1.0, 1.0, 1.0, 1.0])
    base_color_texture: TextureInfo | None = None
    metallic_factor: float = 1.0
    roughness_factor: float = 1.0
    metallic_roughness_texture: TextureInfo | None = None


class Material(Record):
    pbr_metallic_roughness: PbrMetallicRoughness | None = None
    normal_texture: NormalTextureInfo | None = None
    occlusion_texture: OcclusionTextureInfo | None = None
    emissive_texture: TextureInfo | None = None
    emissive_factor: list[float] = Field(default_factory=lambda: [0.0, 0.0, 0.0])
    alpha_mode: str = "OPAQUE"
    alpha_cutoff: float = 0.5
    double_sided: bool = False


class MeshPrimitive(Record):
    attributes: dict[str, int]
    indices: int | None = None
    material: int | None = None
    mode: int = 4
    targets: list[dict[str, int]] | None = None

    @field_validator("attributes", mode="before")
    @classmethod
    def _drop_null_attributes(cls, value: Any) -> Any:
        return _without_nulls(value)

    @field_validator("targets", mode="before")
    @classmethod
    def _drop_null_targets(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [_without_nulls(target) for target in value]
        return value


class Mesh(Record):
    primitives: list[MeshPrimitive]
    weights: list[float] | None = None


class Skin(Record):
    inverse_bind_matrices: int | None = None
    skeleton: int | None = None
    joints: list[int]


class Node(Record):
    camera: int | None = None
    children: list[int] = Field(default_factory=list)
    skin: int | None = None
    matrix: list[float] | None = None
    mesh: int | None = None
    rotation: list[float] | None = None
    scale: list[float] | None = None
    translation: list[float] | None = None
    weights: list[float] | None = None


class Perspective(Record):
    aspect_ratio: float | None = None
    yfov: float
    zfar: float | None = None
    znear: float


class Orthographic(Record):
    xmag: float
    ymag: float
    zfar: float
    znear: float


class Camera(Record):
    type: str
    perspective: Perspective | None = None
    orthographic: Orthographic | None = None


class AnimationChannelTarget(Record):
    node: int | None = None
    path: str


class AnimationChannel(Record):
    sampler: int
    target: AnimationChannelTarget


class AnimationSampler(Record):
    input: int
    interpolation: str = "LINEAR"
    output: int


class Animation(Record):
    channels: list[AnimationChannel]
    samplers: list[AnimationSampler]


class Scene(Record):
    nodes: list[int] = Field(default_factory=list)


class GltfAsset(Record):
    """Root of a deserialized scene description."""

    asset: AssetInfo = Field(default_factory=AssetInfo)
    scene: int | None = None
    scenes: list[Scene] = Field(default_factory=list)
    buffers: list[Buffer] = Field(default_factory=list)
    buffer_views: list[BufferView] = Field(default_factory=list)
    accessors: list[Accessor] = Field(default_factory=list)
    images: list[Image] = Field(default_factory=list)
    samplers: list[Sampler] = Field(default_factory=list)
    textures: list[Texture] = Field(default_factory=list)
    materials: list[Material] = Field(default_factory=list)
    meshes: list[Mesh] = Field(default_factory=list)
    skins: list[Skin] = Field(default_factory=list)
    nodes: list[Node] = Field(default_factory=list)
    cameras: list[Camera] = Field(default_factory=list)
    animations: list[Animation] = Field(default_factory=list)
    extensions_used: list[str] = Field(default_factory=list)
    extensions_required: list[str] = Field(default_factory=list)

    def section_counts(self) -> dict[str, int]:
        """Return the record count of every section, keyed by its JSON name."""
        return {to_camel(name): len(getattr(self, name)) for name in SECTION_NAMES}
