"""Core pipeline for epubmath."""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import os
import re
import shutil
import subprocess
import tempfile
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple

LOG = logging.getLogger("epubmath")

EXIT_INVALID_ARGS = 6
EXIT_OUTPUT_DIR = 7
EXIT_BUILD_FAILED = 9
EXIT_TOOL_MISSING = 10

BOOK_MANIFEST_NAME = "book.json"
HTML_DIR_NAME = "html"
TEXMATH_HREF = "images/texmath"

RENDERER_ENV = "EPUBMATH_RENDERER"
RASTERIZER_ENV = "EPUBMATH_RASTERIZER"
RENDERER_DEFAULT = "phantomjs"
RASTERIZER_DEFAULT = "inkscape"
RENDER_SCRIPT_DEFAULT = Path(__file__).resolve().parent / "data" / "page.js"
RENDER_OUTPUT_NAME = "phantomjs_source.html"

# Raster height in pixels per ex of declared SVG height; looks good on devices.
SCALE_FACTOR_DEFAULT = 9.0
RENDER_TIMEOUT_DEFAULT = 120.0
RASTER_TIMEOUT_DEFAULT = 60.0

CONTENT_CONTAINER_ID = "book"
MATH_FRAME_CLASS = "MathJax_SVG"
MATH_PREVIEW_CLASS = "MathJax_Preview"
SVG_NAMESPACE = "http://www.w3.org/2000/svg"
FALLBACK_CLASS = "texmath"

INVALID_EPUB_ATTRIBUTES = (
    "data-tralics-id",
    "data-label",
    "data-number",
    "data-chapter",
    "role",
    "aria-readonly",
)

MATH_OPEN_RE = re.compile(r"(?:\\\(|\\\[|\\begin\{equation\})")
SVG_HEIGHT_RE = re.compile(r"(?:^|;)\s*height\s*:\s*(-?[0-9]*\.?[0-9]+)")
FRAME_SUFFIX = "-Frame"


class EpubMathError(RuntimeError):
    """Base class for build pipeline failures."""


class RenderUnavailable(EpubMathError):
    """The rendering engine produced no output for a chapter."""


class RenderExtractionMismatch(EpubMathError):
    """Rendered SVGs and display frames cannot be paired."""


class RasterizationFailure(EpubMathError):
    """The rasterizer failed for one math asset."""


class CacheIOFailure(EpubMathError):
    """A filesystem operation on the image cache failed."""


class ToolNotFound(EpubMathError):
    """A required external executable is not installed."""


@dataclass(frozen=True)
class Chapter:
    slug: str
    fragment_name: str
    order_index: int

    @property
    def title(self) -> str:
        return f"Chapter {self.order_index + 1}"

    @property
    def output_name(self) -> str:
        return f"{self.slug}.xhtml"


@dataclass(frozen=True)
class BookManifest:
    title: str
    author: str
    copyright: str
    uuid: str
    filename: str
    chapters: Tuple[Chapter, ...]


@dataclass(frozen=True)
class MathAsset:
    index: int
    content: str
    content_hash: str
    height_ex: Optional[float] = None
    tex_source: Optional[str] = None
    cache_path: Optional[Path] = None


@dataclass(frozen=True)
class MathExtraction:
    document: Any
    assets: Tuple[MathAsset, ...]


@dataclass(frozen=True)
class ChapterBody:
    chapter: Chapter
    markup: str
    math_rendered: bool
    references: FrozenSet[Path] = frozenset()


@dataclass(frozen=True)
class CacheManifest:
    paths: FrozenSet[Path] = frozenset()

    @classmethod
    def from_chapters(cls, bodies: Iterable[ChapterBody]) -> "CacheManifest":
        merged: Set[Path] = set()
        for body in bodies:
            merged.update(body.references)
        return cls(frozenset(merged))


@dataclass
class BuildConfig:
    from_dir: Path
    out_dir: Path
    renderer: str = RENDERER_DEFAULT
    render_script: Path = RENDER_SCRIPT_DEFAULT
    rasterizer: str = RASTERIZER_DEFAULT
    scale_factor: float = SCALE_FACTOR_DEFAULT
    render_timeout: float = RENDER_TIMEOUT_DEFAULT
    raster_timeout: float = RASTER_TIMEOUT_DEFAULT
    jobs: int = 1
    package: bool = True
    verbose: bool = False
    debug: bool = False

    @property
    def html_dir(self) -> Path:
        return self.from_dir / HTML_DIR_NAME

    @property
    def epub_dir(self) -> Path:
        return self.out_dir / "epub"

    @property
    def oebps_dir(self) -> Path:
        return self.epub_dir / "OEBPS"

    @property
    def texmath_dir(self) -> Path:
        return self.oebps_dir / TEXMATH_HREF


@dataclass(frozen=True)
class ExternalTools:
    renderer: str
    render_script: Path
    rasterizer: str


@dataclass
class BuildResult:
    book: BookManifest
    bodies: List[ChapterBody]
    cache_manifest: CacheManifest
    removed: List[Path] = field(default_factory=list)
    epub_path: Optional[Path] = None


def _resolve_log_level(verbose: bool, debug: bool) -> int:
    return logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)


def _configure_epubmath_logger(level: int) -> None:
    LOG.setLevel(level)
    LOG.propagate = False
    if not LOG.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        handler.setLevel(level)
        LOG.addHandler(handler)
    else:
        for handler in LOG.handlers:
            handler.setLevel(level)
            if handler.formatter is None:
                handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))


def setup_logging(verbose: bool, debug: bool) -> None:
    level = _resolve_log_level(verbose, debug)
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")
    _configure_epubmath_logger(level)


def _progress_bar_line(current: int, total: int, width: int = 24) -> str:
    if total <= 0:
        return "[?]"
    clamped = max(0, min(current, total))
    filled = int((clamped / total) * width)
    filled = min(filled, width)
    return "[" + "#" * filled + "." * (width - filled) + "]"


def _log_verbose_progress(prefix: str, current: int, total: int, detail: Optional[str] = None) -> None:
    bar = _progress_bar_line(current, total)
    counter = f"[{current}/{total}]" if total > 0 else f"[{current}]"
    if total > 0:
        msg = f"{prefix} {bar} {counter} ({(current / total) * 100.0:.1f}%)"
    else:
        msg = f"{prefix} {bar} {counter}"
    if detail:
        msg = f"{msg} | {detail}"
    LOG.info(msg)


def slugify_filename(name: str) -> str:
    name = name.strip().replace(" ", "_")
    name = re.sub(r"[^A-Za-z0-9._-]+", "_", name)
    return name or "book"


def safe_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8", newline="\n")


def _require_bs4():
    try:
        from bs4 import BeautifulSoup  # type: ignore
    except Exception as exc:
        raise RuntimeError(f"beautifulsoup4 not available: {exc}") from exc
    return BeautifulSoup


def parse_html(raw: str):
    BeautifulSoup = _require_bs4()
    return BeautifulSoup(raw, "html.parser")


def load_book_manifest(path: Path) -> BookManifest:
    try:
        data_raw = json.loads(path.read_text(encoding="utf-8"))
    except Exception as exc:
        raise ValueError(f"Unable to read book manifest {path}: {exc}") from exc
    if not isinstance(data_raw, dict):
        raise ValueError(f"Book manifest {path} must contain a JSON object")

    title = data_raw.get("title")
    if not isinstance(title, str) or not title.strip():
        raise ValueError(f"Book manifest {path} missing non-empty key: title")
    title = title.strip()

    entries = data_raw.get("chapters")
    if not isinstance(entries, list) or not entries:
        raise ValueError(f"Book manifest {path} missing non-empty key: chapters")

    chapters: List[Chapter] = []
    seen: Set[str] = set()
    for index, entry in enumerate(entries):
        if isinstance(entry, str):
            entry = {"slug": entry}
        slug = entry.get("slug") if isinstance(entry, dict) else None
        if not isinstance(slug, str) or not slug.strip():
            raise ValueError(f"Book manifest {path} chapter #{index + 1} missing non-empty key: slug")
        slug = slug.strip()
        if slug in seen:
            raise ValueError(f"Book manifest {path} has duplicate chapter slug: {slug}")
        seen.add(slug)
        fragment_name = str(entry.get("fragment_name") or f"{slug}_fragment.html")
        chapters.append(Chapter(slug=slug, fragment_name=fragment_name, order_index=index))

    book_uuid = str(data_raw.get("uuid") or uuid.uuid5(uuid.NAMESPACE_URL, title))
    return BookManifest(
        title=title,
        author=str(data_raw.get("author") or ""),
        copyright=str(data_raw.get("copyright") or ""),
        uuid=book_uuid,
        filename=slugify_filename(str(data_raw.get("filename") or title)),
        chapters=tuple(chapters),
    )


def has_math(fragment_body: str) -> bool:
    """Return True if the text contains an opening \\(, \\[ or \\begin{equation}."""
    return bool(MATH_OPEN_RE.search(fragment_body or ""))


def strip_attributes(doc):
    """Return a copy of ``doc`` without the attributes EPUB readers reject."""
    cleaned = copy.copy(doc)
    for tag in cleaned.find_all(True):
        for attr in INVALID_EPUB_ATTRIBUTES:
            if attr in tag.attrs:
                del tag[attr]
    return cleaned


def body_markup(doc) -> str:
    body = doc.body if doc.body is not None else doc
    return "".join(str(child) for child in body.contents)


def resolve_executable(value: str, message: str) -> str:
    candidate = Path(value).expanduser()
    if candidate.parent != Path(".") and candidate.is_file():
        return str(candidate)
    found = shutil.which(value)
    if not found:
        raise ToolNotFound(f"{value} not found. {message}")
    return found


def resolve_tools(config: BuildConfig) -> ExternalTools:
    renderer = resolve_executable(config.renderer, "Install PhantomJS (http://phantomjs.org/)")
    rasterizer = resolve_executable(config.rasterizer, "Install Inkscape (http://inkscape.org/)")
    script = Path(config.render_script).expanduser()
    if not script.is_file():
        raise ToolNotFound(f"Render script not found: {script}")
    return ExternalTools(renderer=renderer, render_script=script, rasterizer=rasterizer)


def _invoke_renderer(chapter_url: str, tools: ExternalTools, timeout: float):
    with tempfile.TemporaryDirectory(prefix="epubmath-render-") as workdir:
        output_path = Path(workdir) / RENDER_OUTPUT_NAME
        cmd = [tools.renderer, str(tools.render_script), chapter_url]
        LOG.debug("Running renderer: %s", " ".join(cmd))
        try:
            result = subprocess.run(cmd, cwd=workdir, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired as exc:
            raise RenderUnavailable(f"Renderer timed out after {timeout:g}s for {chapter_url}") from exc
        except OSError as exc:
            raise ToolNotFound(f"Unable to run renderer {tools.renderer}: {exc}") from exc
        if result.returncode != 0:
            LOG.debug("Renderer exited with status %d for %s: %s", result.returncode, chapter_url, result.stderr)
        if not output_path.exists():
            raise RenderUnavailable(f"Renderer produced no {RENDER_OUTPUT_NAME} for {chapter_url}")
        raw_source = output_path.read_text(encoding="utf-8", errors="replace")
        output_path.unlink()
    return parse_html(raw_source)


def render_document(chapter_url: str, tools: ExternalTools, timeout: float = RENDER_TIMEOUT_DEFAULT):
    """Render ``chapter_url`` with the math engine.

    Returns the parsed rendered document, or None when the engine left no
    output behind. The caller then falls back to the chapter's plain body.
    """
    try:
        return _invoke_renderer(chapter_url, tools, timeout)
    except RenderUnavailable as exc:
        LOG.warning("%s; math left unrendered", exc)
        return None


def _select_math_graphics(doc) -> List[Any]:
    container = doc.find("div", id=CONTENT_CONTAINER_ID)
    if container is None:
        return []
    return [svg for svg in container.find_all("svg") if svg.find_parent("svg") is None]


def _select_math_frames(doc) -> List[Any]:
    return doc.find_all("span", class_=MATH_FRAME_CLASS)


def _collect_glyphs(node) -> Dict[str, Any]:
    glyphs: Dict[str, Any] = {}
    for defs in node.find_all("defs"):
        for glyph in defs.find_all(id=True):
            if glyph["id"] not in glyphs:
                glyphs[glyph["id"]] = copy.copy(glyph)
    return glyphs


def _inline_glyph_defs(svg, glyphs: Dict[str, Any], doc) -> None:
    local_ids = {tag["id"] for tag in svg.find_all(id=True)}
    missing: List[str] = []
    for use in svg.find_all("use"):
        href = use.get("xlink:href") or use.get("href") or ""
        ref = href[1:] if href.startswith("#") else ""
        if ref and ref not in local_ids and ref in glyphs and ref not in missing:
            missing.append(ref)
    if not missing:
        return
    defs = doc.new_tag("defs")
    for ref in missing:
        defs.append(copy.copy(glyphs[ref]))
    svg.insert(0, defs)


def _tex_sources(doc) -> Dict[str, str]:
    sources: Dict[str, str] = {}
    for script in doc.find_all("script"):
        script_type = str(script.get("type") or "")
        script_id = script.get("id")
        if script_id and script_type.startswith("math/tex"):
            sources[str(script_id)] = script.get_text().strip()
    return sources


def _svg_height_ex(svg) -> Optional[float]:
    match = SVG_HEIGHT_RE.search(str(svg.get("style") or ""))
    if not match:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None


def content_digest(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def extract_math(doc) -> MathExtraction:
    """Pair every rendered SVG with its display frame and hash it.

    Works on a copy of ``doc``: the hidden MathJax container, scripts and
    preview spans are removed, SVG attributes are normalized, and one
    MathAsset per expression is returned in document order together with the
    cleaned document. Raises RenderExtractionMismatch when the SVG and frame
    counts differ.
    """
    source = copy.copy(doc)
    body = source.body if source.body is not None else source

    glyphs = _collect_glyphs(body)
    hidden = body.find("div", recursive=False)
    if hidden is not None and hidden.get("id") != CONTENT_CONTAINER_ID:
        hidden.decompose()

    tex_by_id = _tex_sources(source)
    for script in source.find_all("script"):
        script.decompose()
    for preview in source.find_all("span", class_=MATH_PREVIEW_CLASS):
        preview.decompose()

    svgs = _select_math_graphics(source)
    frames = _select_math_frames(source)
    if len(svgs) != len(frames):
        raise RenderExtractionMismatch(
            f"Rendered output has {len(svgs)} math SVG(s) but {len(frames)} display frame(s)"
        )

    assets: List[MathAsset] = []
    for index, (svg, frame) in enumerate(zip(svgs, frames)):
        if svg.has_attr("viewbox"):
            svg["viewBox"] = svg["viewbox"]
            del svg["viewbox"]
        if not svg.has_attr("xmlns"):
            svg["xmlns"] = SVG_NAMESPACE
        _inline_glyph_defs(svg, glyphs, source)

        first_child = frame.contents[0] if frame.contents else None
        if first_child is not svg:
            if first_child is None:
                frame.append(svg.extract())
            else:
                first_child.replace_with(svg.extract())

        frame_id = str(frame.get("id") or "")
        tex_source = None
        if frame_id.endswith(FRAME_SUFFIX):
            tex_source = tex_by_id.get(frame_id[: -len(FRAME_SUFFIX)])

        content = str(svg)
        assets.append(
            MathAsset(
                index=index,
                content=content,
                content_hash=content_digest(content),
                height_ex=_svg_height_ex(svg),
                tex_source=tex_source,
            )
        )
    return MathExtraction(document=source, assets=tuple(assets))


class ImageCache:
    """Content-addressed PNG store for rendered math.

    A PNG is produced at most once per content hash; concurrent callers with
    the same hash wait on a per-hash lock.
    """

    def __init__(
        self,
        texmath_dir: Path,
        rasterizer: str,
        scale_factor: float = SCALE_FACTOR_DEFAULT,
        timeout: float = RASTER_TIMEOUT_DEFAULT,
    ) -> None:
        self.texmath_dir = texmath_dir
        self.rasterizer = rasterizer
        self.scale_factor = scale_factor
        self.timeout = timeout
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def path_for(self, content_hash: str) -> Path:
        return self.texmath_dir / f"{content_hash}.png"

    def _lock_for(self, content_hash: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(content_hash)
            if lock is None:
                lock = threading.Lock()
                self._locks[content_hash] = lock
            return lock

    def target_height(self, asset: MathAsset) -> Optional[int]:
        if asset.height_ex is None or asset.height_ex <= 0:
            return None
        return max(1, int(round(self.scale_factor * asset.height_ex)))

    def materialize(self, asset: MathAsset, references: Set[Path]) -> Path:
        cache_path = self.path_for(asset.content_hash)
        with self._lock_for(asset.content_hash):
            if cache_path.exists():
                LOG.debug("Reusing cached PNG %s", cache_path)
            else:
                self._rasterize(asset, cache_path)
        references.add(cache_path)
        return cache_path

    def _rasterize(self, asset: MathAsset, cache_path: Path) -> None:
        LOG.info("Creating %s", cache_path)
        svg_file = None
        try:
            cache_path.parent.mkdir(parents=True, exist_ok=True)
            svg_file = tempfile.NamedTemporaryFile("w", suffix=".svg", encoding="utf-8", delete=False)
            png_fd, png_name = tempfile.mkstemp(prefix=f".{asset.content_hash}-", suffix=".png", dir=cache_path.parent)
            os.close(png_fd)
        except OSError as exc:
            if svg_file is not None:
                svg_file.close()
                Path(svg_file.name).unlink(missing_ok=True)
            raise CacheIOFailure(f"Unable to create scratch files for {asset.content_hash}: {exc}") from exc
        svg_path = Path(svg_file.name)
        staged_path = Path(png_name)

        # The rasterizer writes next to the cache entry; only a verified PNG is moved into place.
        cmd = [self.rasterizer, str(svg_path), "--export-type=png", f"--export-filename={staged_path}"]
        height = self.target_height(asset)
        if height is not None:
            cmd.append(f"--export-height={height}")
        try:
            try:
                with svg_file:
                    svg_file.write(asset.content)
            except OSError as exc:
                raise CacheIOFailure(f"Unable to write SVG for {asset.content_hash}: {exc}") from exc
            LOG.debug("Running rasterizer: %s", " ".join(cmd))
            try:
                result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
            except subprocess.TimeoutExpired as exc:
                raise RasterizationFailure(
                    f"Rasterizer timed out after {self.timeout:g}s for {asset.content_hash}"
                ) from exc
            except OSError as exc:
                raise ToolNotFound(f"Unable to run rasterizer {self.rasterizer}: {exc}") from exc
            if result.returncode != 0:
                LOG.debug("Rasterizer stderr for %s: %s", asset.content_hash, result.stderr)
                raise RasterizationFailure(
                    f"Rasterizer exited with status {result.returncode} for {asset.content_hash}"
                )
            self._verify_png(asset, staged_path)
            try:
                os.replace(staged_path, cache_path)
            except OSError as exc:
                raise CacheIOFailure(f"Unable to store PNG {cache_path}: {exc}") from exc
        finally:
            for scratch in (svg_path, staged_path):
                try:
                    scratch.unlink()
                except FileNotFoundError:
                    pass
                except OSError as exc:
                    raise CacheIOFailure(f"Unable to remove scratch file {scratch}: {exc}") from exc

    def _verify_png(self, asset: MathAsset, png_path: Path) -> None:
        try:
            from PIL import Image  # type: ignore
        except Exception as exc:
            raise RuntimeError(f"Pillow not available: {exc}") from exc

        if not png_path.exists() or png_path.stat().st_size == 0:
            raise RasterizationFailure(f"Rasterizer produced no PNG for {asset.content_hash}")
        try:
            with Image.open(png_path) as img:
                img.verify()
                width, height = img.size
        except Exception as exc:
            raise RasterizationFailure(f"Rasterizer produced an unreadable PNG for {asset.content_hash}: {exc}") from exc
        LOG.debug("Rasterized %s (%dx%dpx)", asset.content_hash, width, height)


def image_href(cache_path: Path) -> str:
    return f"{TEXMATH_HREF}/{cache_path.name}"


def rewrite_fragment(doc, assets_with_paths: Sequence[Tuple[MathAsset, Optional[Path]]]) -> str:
    """Replace each math SVG with an image reference and return the body markup.

    Assets without a cache path keep a text fallback with their TeX source.
    """
    target = copy.copy(doc)
    svgs = _select_math_graphics(target)
    for asset, cache_path in assets_with_paths:
        if asset.index >= len(svgs):
            raise RenderExtractionMismatch(
                f"Math asset #{asset.index + 1} has no matching SVG in the rendered document"
            )
        svg = svgs[asset.index]
        if cache_path is not None:
            href = image_href(cache_path)
            replacement = target.new_tag("img", attrs={"src": href, "alt": href.rsplit(".", 1)[0]})
        else:
            replacement = target.new_tag("span", attrs={"class": FALLBACK_CLASS})
            replacement.string = asset.tex_source or asset.content_hash
        svg.replace_with(replacement)
    return body_markup(target)


def sweep_cache(texmath_dir: Path, referenced: Iterable[Path]) -> List[Path]:
    keep = {Path(p).resolve() for p in referenced}
    removed: List[Path] = []
    if not texmath_dir.is_dir():
        return removed
    for png in sorted(texmath_dir.glob("*.png")):
        if png.resolve() in keep:
            continue
        LOG.info("Removing unused PNG %s", png)
        try:
            png.unlink()
        except FileNotFoundError:
            continue
        except OSError as exc:
            raise CacheIOFailure(f"Unable to remove unused PNG {png}: {exc}") from exc
        removed.append(png)
    return removed


def chapter_url(chapter: Chapter, html_dir: Path) -> str:
    return (html_dir / f"{chapter.slug}.html").resolve().as_uri()


def read_fragment(chapter: Chapter, html_dir: Path):
    path = html_dir / chapter.fragment_name
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ValueError(f"Unable to read chapter fragment {path}: {exc}") from exc
    return strip_attributes(parse_html(raw))


def html_with_math(
    chapter: Chapter,
    html_dir: Path,
    tools: ExternalTools,
    cache: ImageCache,
    references: Set[Path],
    render_timeout: float = RENDER_TIMEOUT_DEFAULT,
) -> Optional[str]:
    rendered = render_document(chapter_url(chapter, html_dir), tools, timeout=render_timeout)
    if rendered is None:
        return None
    extraction = extract_math(strip_attributes(rendered))

    pairs: List[Tuple[MathAsset, Optional[Path]]] = []
    for asset in extraction.assets:
        try:
            cache_path: Optional[Path] = cache.materialize(asset, references)
        except RasterizationFailure as exc:
            LOG.warning("%s (%s); keeping text fallback for math %s", exc, chapter.slug, asset.content_hash)
            cache_path = None
        pairs.append((replace(asset, cache_path=cache_path), cache_path))
    return rewrite_fragment(extraction.document, pairs)


def process_chapter(
    chapter: Chapter,
    fragment,
    config: BuildConfig,
    tools: Optional[ExternalTools],
    cache: Optional[ImageCache],
) -> ChapterBody:
    inner_html = body_markup(fragment)
    if not has_math(inner_html) or tools is None or cache is None:
        return ChapterBody(chapter=chapter, markup=inner_html, math_rendered=False)

    references: Set[Path] = set()
    html = html_with_math(chapter, config.html_dir, tools, cache, references, render_timeout=config.render_timeout)
    if html is None:
        return ChapterBody(chapter=chapter, markup=inner_html, math_rendered=False)
    return ChapterBody(chapter=chapter, markup=html, math_rendered=True, references=frozenset(references))


def process_chapters(
    chapters: Sequence[Chapter],
    config: BuildConfig,
) -> List[ChapterBody]:
    fragments = [read_fragment(chapter, config.html_dir) for chapter in chapters]
    math_flags = [has_math(body_markup(fragment)) for fragment in fragments]

    tools: Optional[ExternalTools] = None
    cache: Optional[ImageCache] = None
    if any(math_flags):
        tools = resolve_tools(config)
        cache = ImageCache(
            config.texmath_dir,
            tools.rasterizer,
            scale_factor=config.scale_factor,
            timeout=config.raster_timeout,
        )
    elif config.verbose:
        LOG.info("No chapter contains math; skipping the renderer")

    total = len(chapters)
    bodies: List[Optional[ChapterBody]] = [None] * total

    def _run(index: int) -> ChapterBody:
        chapter = chapters[index]
        body = process_chapter(chapter, fragments[index], config, tools, cache)
        if config.verbose:
            status = "math" if body.math_rendered else "plain"
            _log_verbose_progress("Chapters", index + 1, total, detail=f"{chapter.slug} -> {status}")
        return body

    workers = max(1, int(config.jobs))
    if workers == 1 or total <= 1:
        for index in range(total):
            bodies[index] = _run(index)
    else:
        with ThreadPoolExecutor(max_workers=min(workers, total)) as pool:
            futures = [pool.submit(_run, index) for index in range(total)]
            for index, future in enumerate(futures):
                bodies[index] = future.result()

    return [body for body in bodies if body is not None]


def run_build_pipeline(config: BuildConfig) -> BuildResult:
    from epubmath import package

    _configure_epubmath_logger(_resolve_log_level(config.verbose, config.debug))

    manifest_path = config.from_dir / BOOK_MANIFEST_NAME
    if not manifest_path.exists():
        raise ValueError(f"{BOOK_MANIFEST_NAME} not found in {config.from_dir}")
    if not config.html_dir.is_dir():
        raise ValueError(f"{HTML_DIR_NAME} directory not found in {config.from_dir}")
    book = load_book_manifest(manifest_path)

    try:
        package.prepare_package_dirs(config)
    except OSError as exc:
        raise CacheIOFailure(f"Unable to create output directories in {config.out_dir}: {exc}") from exc
    package.copy_image_files(config)

    bodies = process_chapters(book.chapters, config)

    cache_manifest = CacheManifest.from_chapters(bodies)
    removed = sweep_cache(config.texmath_dir, cache_manifest.paths)
    if config.verbose:
        LOG.info(
            "Math cache: %d PNG(s) referenced, %d removed",
            len(cache_manifest.paths),
            len(removed),
        )

    result = BuildResult(book=book, bodies=bodies, cache_manifest=cache_manifest, removed=removed)
    if config.package:
        result.epub_path = package.assemble_package(book, bodies, config)
    return result
