"""glimport: glTF 2.0 / GLB asset import pipeline."""

__version__ = "0.1.0"

from glimport.container import Format, GlbContent, decode_glb  # noqa: E402
from glimport.graph import ResourceGraph, SceneNode  # noqa: E402
from glimport.importer import load, load_async, load_bytes, parse_asset, start_load  # noqa: E402
from glimport.settings import ImportSettings, ShaderSettings  # noqa: E402

__all__ = [
    "Format",
    "GlbContent",
    "ImportSettings",
    "ResourceGraph",
    "SceneNode",
    "ShaderSettings",
    "decode_glb",
    "load",
    "load_async",
    "load_bytes",
    "parse_asset",
    "start_load",
]
