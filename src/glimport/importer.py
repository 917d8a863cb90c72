"""Load entry points: detect the format, decode, and run the stage pipeline."""

from __future__ import annotations

import asyncio
import functools
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

from pydantic import ValidationError as PydanticValidationError

from glimport.container import Format, decode_glb, read_bin_chunk, sniff_format
from glimport.errors import FetchError, FormatError, ParseError, UnsupportedFeatureError
from glimport.graph import ResourceGraph, assemble_graph
from glimport.models import GltfAsset
from glimport.pipeline import PipelineRun, ProgressObserver, StageContext, drive_async
from glimport.resolver import Fetcher, HttpFetcher, ResourceResolver, is_url
from glimport.settings import ImportSettings
from glimport.stages import (
    DRACO,
    SPECULAR_GLOSSINESS,
    TEXTURE_SOURCE_EXTENSIONS,
    TEXTURE_TRANSFORM,
    UNLIT,
    build_stage_graph,
)
from glimport.warning_policy import WarningPolicy, emit_warning

SUPPORTED_EXTENSIONS: frozenset[str] = frozenset(
    {
        SPECULAR_GLOSSINESS,
        UNLIT,
        TEXTURE_TRANSFORM,
        "KHR_mesh_quantization",
        *TEXTURE_SOURCE_EXTENSIONS,
    }
)

Source = str | Path | bytes | bytearray | memoryview


@dataclass
class OpenedDocument:
    asset: GltfAsset
    bin_chunk: memoryview | None
    location: str | Path | None


def parse_asset(json_text: str) -> GltfAsset:
    """Deserialize a glTF JSON document.

    Raises:
        ParseError: On invalid JSON or records of the wrong shape.
    """
    try:
        return GltfAsset.model_validate_json(json_text)
    except PydanticValidationError as e:
        raise ParseError(f"Invalid glTF document:\n{e}") from e


def check_extensions(asset: GltfAsset, *, warning_policy: WarningPolicy | None = None) -> None:
    """Reject unsupported required extensions; warn about unsupported optional ones."""
    required = [ext for ext in asset.extensions_required if ext not in SUPPORTED_EXTENSIONS]
    if required:
        hint = " (compressed meshes)" if DRACO in required else ""
        raise UnsupportedFeatureError(
            f"Document requires unsupported extension(s): {', '.join(required)}{hint}"
        )
    for ext in asset.extensions_used:
        if ext not in SUPPORTED_EXTENSIONS:
            emit_warning(
                "W04",
                f"Extension {ext!r} is not supported and will be ignored",
                policy=warning_policy,
            )


def detect_format(source: Source) -> Format | None:
    """Choose a format by file extension for paths/URLs and by content for bytes."""
    if isinstance(source, (bytes, bytearray, memoryview)):
        return sniff_format(source)
    text = str(source)
    suffix = Path(urlparse(text).path if is_url(text) else text).suffix.lower()
    return {".glb": Format.GLB, ".gltf": Format.GLTF}.get(suffix)


def _retrieve(source: str | Path, settings: ImportSettings, fetcher: Fetcher | None) -> bytes:
    """Read a local document, or fetch it when it is remote."""
    remote = (isinstance(source, str) and is_url(source)) or not settings.treat_input_as_local_file
    if remote:
        fetcher = fetcher or HttpFetcher()
        return fetcher.fetch(str(source), settings.request_headers)
    try:
        return Path(source).read_bytes()
    except OSError as e:
        raise FetchError(f"Cannot read file: {e}") from e


def open_document(
    source: Source,
    settings: ImportSettings,
    fmt: Format = Format.AUTO,
    *,
    fetcher: Fetcher | None = None,
    warning_policy: WarningPolicy | None = None,
) -> OpenedDocument | None:
    """Decode ``source`` into an asset description and optional BIN payload.

    Returns None (after warning ``W03``) when the format cannot be determined.
    """
    if fmt is Format.AUTO:
        fmt = detect_format(source)
        if fmt is None:
            label = "byte input" if isinstance(source, (bytes, bytearray, memoryview)) else source
            emit_warning("W03", f"Format of {label} not recognized", policy=warning_policy)
            return None

    if isinstance(source, (bytes, bytearray, memoryview)):
        data = bytes(source)
        location = None
    else:
        data = _retrieve(source, settings, fetcher)
        location = str(source) if isinstance(source, str) else source

    if fmt is Format.GLB:
        content = decode_glb(data, warning_policy=warning_policy)
        asset = parse_asset(content.json_text)
        bin_chunk = read_bin_chunk(data, content.bin_chunk_start)
    else:
        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise FormatError(f"glTF document is not valid UTF-8: {e}") from e
        asset = parse_asset(text)
        bin_chunk = None

    check_extensions(asset, warning_policy=warning_policy)
    return OpenedDocument(asset=asset, bin_chunk=bin_chunk, location=location)


def start_load(
    source: Source,
    settings: ImportSettings | None = None,
    fmt: Format = Format.AUTO,
    *,
    fetcher: Fetcher | None = None,
    base_path: str | Path | None = None,
    warning_policy: WarningPolicy | None = None,
    on_progress: ProgressObserver | None = None,
) -> PipelineRun[ResourceGraph] | None:
    """Decode ``source`` and return a pipeline run to be stepped by the caller.

    Each ``run.step()`` does one bounded slice of work, so a per-frame driver
    can advance the import without blocking.
    """
    settings = settings or ImportSettings()
    document = open_document(
        source,
        settings,
        fmt,
        fetcher=fetcher,
        warning_policy=warning_policy,
    )
    if document is None:
        return None

    fetcher = fetcher or HttpFetcher()
    if isinstance(source, (bytes, bytearray, memoryview)):
        base = None
        if base_path is not None and settings.resolve_relative_paths:
            base = Path(base_path)
        resolver = ResourceResolver(
            base=base,
            fetcher=fetcher,
            headers=settings.request_headers,
        )
    else:
        resolver = ResourceResolver.for_document(
            document.location,
            resolve_relative_paths=settings.resolve_relative_paths,
            fetcher=fetcher,
            headers=settings.request_headers,
        )
    context = StageContext(
        asset=document.asset,
        settings=settings,
        resolver=resolver,
        bin_chunk=document.bin_chunk,
        warning_policy=warning_policy,
    )
    return PipelineRun(
        build_stage_graph(),
        context,
        assemble=assemble_graph,
        observers=[on_progress] if on_progress is not None else [],
    )


def load(
    source: Source,
    settings: ImportSettings | None = None,
    fmt: Format = Format.AUTO,
    *,
    fetcher: Fetcher | None = None,
    base_path: str | Path | None = None,
    warning_policy: WarningPolicy | None = None,
    on_progress: ProgressObserver | None = None,
) -> ResourceGraph | None:
    """Load an asset synchronously and return its ResourceGraph.

    Returns None when the format is not recognized.

    Raises:
        GlimportError: The first decode or stage failure; no partial graph
            is returned.
    """
    run = start_load(
        source,
        settings,
        fmt,
        fetcher=fetcher,
        base_path=base_path,
        warning_policy=warning_policy,
        on_progress=on_progress,
    )
    if run is None:
        return None
    return run.run_sync()


async def load_async(
    source: Source,
    settings: ImportSettings | None = None,
    fmt: Format = Format.AUTO,
    *,
    fetcher: Fetcher | None = None,
    base_path: str | Path | None = None,
    warning_policy: WarningPolicy | None = None,
    on_progress: ProgressObserver | None = None,
) -> ResourceGraph | None:
    """Load an asset from a running event loop without blocking it."""
    loop = asyncio.get_running_loop()
    run = await loop.run_in_executor(
        None,
        functools.partial(
            start_load,
            source,
            settings,
            fmt,
            fetcher=fetcher,
            base_path=base_path,
            warning_policy=warning_policy,
            on_progress=on_progress,
        ),
    )
    if run is None:
        return None
    return await drive_async(run)


def load_bytes(
    data: bytes | bytearray | memoryview,
    settings: ImportSettings | None = None,
    fmt: Format = Format.AUTO,
    *,
    base_path: str | Path | None = None,
    fetcher: Fetcher | None = None,
    warning_policy: WarningPolicy | None = None,
    on_progress: ProgressObserver | None = None,
) -> ResourceGraph | None:
    """Load an in-memory asset; relative URIs resolve against ``base_path``."""
    return load(
        bytes(data),
        settings,
        fmt,
        fetcher=fetcher,
        base_path=base_path,
        warning_policy=warning_policy,
        on_progress=on_progress,
    )
