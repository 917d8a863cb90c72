"""The linked output of a pipeline run."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterator

import numpy as np

from glimport.errors import RecordError, ReferenceError

if TYPE_CHECKING:
    from glimport.pipeline import PipelineRun
    from glimport.stages import (
        AnimationClip,
        CameraData,
        ImageData,
        MaterialData,
        MeshData,
        SkinData,
        TextureData,
    )


@dataclass(eq=False)
class SceneNode:
    """One resolved node. ``index`` is None for the synthetic root."""

    index: int | None
    name: str | None
    matrix: np.ndarray = field(default_factory=lambda: np.eye(4))
    children: list[SceneNode] = field(default_factory=list)
    parent: SceneNode | None = field(default=None, repr=False)
    mesh: MeshData | None = None
    skin: SkinData | None = None
    camera: CameraData | None = None
    weights: list[float] | None = None
    extras: Any = None

    def walk(self) -> Iterator[SceneNode]:
        """Yield this node and its descendants depth-first."""
        yield self
        for child in self.children:
            yield from child.walk()

    def to_dict(self) -> dict:
        """Plain structural summary, used for comparison and CLI output."""
        return {
            "index": self.index,
            "name": self.name,
            "matrix": np.round(self.matrix, 6).tolist(),
            "mesh": self.mesh.index if self.mesh is not None else None,
            "skin": self.skin.index if self.skin is not None else None,
            "camera": self.camera.index if self.camera is not None else None,
            "children": [child.to_dict() for child in self.children],
        }


@dataclass
class ResourceGraph:
    """Root node tree plus back-references to every stage output it was built from.

    The caller owns the graph; no raw buffer is reachable from it.
    """

    root: SceneNode
    nodes: list[SceneNode] = field(default_factory=list)
    meshes: list[MeshData] = field(default_factory=list)
    materials: list[MaterialData | None] = field(default_factory=list)
    textures: list[TextureData] = field(default_factory=list)
    images: list[ImageData] = field(default_factory=list)
    skins: list[SkinData] = field(default_factory=list)
    cameras: list[CameraData] = field(default_factory=list)
    animations: list[AnimationClip] = field(default_factory=list)

    def find(self, name: str) -> SceneNode | None:
        for node in self.root.walk():
            if node.name == name:
                return node
        return None

    def summary(self) -> dict:
        return {
            "nodes": len(self.nodes),
            "root_children": len(self.root.children),
            "meshes": len(self.meshes),
            "materials": len(self.materials),
            "textures": len(self.textures),
            "images": len(self.images),
            "skins": len(self.skins),
            "cameras": len(self.cameras),
            "animations": len(self.animations),
            "tree": self.root.to_dict(),
        }


def assemble_graph(run: PipelineRun) -> ResourceGraph:
    """Link the completed stage outputs of ``run`` under a synthetic root.

    The root's children are the default scene's nodes when the document
    declares scenes, otherwise every node without a parent. A scene may only
    list parentless nodes, each at most once.
    """
    asset = run.context.asset
    nodes: list[SceneNode] = run.results("nodes")
    root = SceneNode(index=None, name="Root")

    if asset.scenes:
        scene_index = asset.scene if asset.scene is not None else 0
        if not 0 <= scene_index < len(asset.scenes):
            raise ReferenceError(
                f"document references scene {scene_index}, but only {len(asset.scenes)} exist"
            )
        top_level = []
        for node_index in asset.scenes[scene_index].nodes:
            if not 0 <= node_index < len(nodes):
                raise ReferenceError(
                    f"scene {scene_index} references node {node_index}, "
                    f"but only {len(nodes)} exist"
                )
            node = nodes[node_index]
            if node.parent is not None:
                raise RecordError(f"scene {scene_index} lists non-root node {node_index}")
            if node in top_level:
                raise RecordError(f"scene {scene_index} lists node {node_index} twice")
            top_level.append(node)
    else:
        top_level = [node for node in nodes if node.parent is None]

    for node in top_level:
        node.parent = root
        root.children.append(node)

    return ResourceGraph(
        root=root,
        nodes=nodes,
        meshes=run.results("meshes"),
        materials=run.results("materials"),
        textures=run.results("textures"),
        images=run.results("images"),
        skins=run.results("skins"),
        cameras=run.results("cameras"),
        animations=run.results("animations"),
    )
