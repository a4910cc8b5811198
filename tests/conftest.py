import json
import subprocess
from html import escape
from pathlib import Path
from urllib.parse import urlparse

import pytest

import epubmath.core as core


GLYPH_DEFS = (
    '<svg style="display: none;"><defs id="MathJax_SVG_glyphs">'
    '<path id="MJMATHI-78" stroke-width="1" d="M52 289Q59 331 106 386T222 442"></path>'
    "</defs></svg>"
)


def write_test_png(path: Path, *, width: int = 20, height: int = 20) -> None:
    from PIL import Image

    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", (width, height), color=(10, 10, 10)).save(path)


def math_frame(index: int, tex: str) -> str:
    return (
        '<span class="MathJax_Preview"></span>'
        f'<span class="MathJax_SVG" id="MathJax-Element-{index}-Frame" role="presentation">'
        '<svg xmlns:xlink="http://www.w3.org/1999/xlink" '
        'style="width: 2.343ex; height: 2.176ex; vertical-align: -0.338ex;" '
        'viewBox="0 -791.3 1008.9 936.9" role="img" focusable="false">'
        f"<desc>{escape(tex)}</desc>"
        '<g stroke="currentColor"><use xlink:href="#MJMATHI-78"></use></g>'
        "</svg></span>"
        f'<script type="math/tex" id="MathJax-Element-{index}">{escape(tex)}</script>'
    )


def mathjax_page(expressions, *, orphan_svgs: int = 0) -> str:
    frames = " and ".join(math_frame(i, tex) for i, tex in enumerate(expressions, start=1))
    orphans = "".join('<svg style="height: 1ex;"><g></g></svg>' for _ in range(orphan_svgs))
    return (
        "<html><head><title>Chapter</title></head><body>"
        '<div style="visibility: hidden; overflow: hidden; position: absolute;">'
        f'<div id="MathJax_Hidden"></div>{GLYPH_DEFS}</div>'
        f'<div id="book"><p data-label="intro">Let {frames} hold.</p>{orphans}</div>'
        '<script type="text/javascript" src="MathJax/MathJax.js"></script>'
        "</body></html>\n"
    )


class FakeTools:
    """Stands in for PhantomJS and Inkscape behind ``subprocess.run``."""

    def __init__(self, bin_dir: Path) -> None:
        bin_dir.mkdir(parents=True, exist_ok=True)
        self.renderer = bin_dir / "phantomjs"
        self.rasterizer = bin_dir / "inkscape"
        self.renderer.write_text("#!/bin/sh\n", encoding="utf-8")
        self.rasterizer.write_text("#!/bin/sh\n", encoding="utf-8")
        self.pages = {}
        self.fail_markers = set()
        self.render_calls = []
        self.raster_calls = []

    def run(self, cmd, **kwargs):
        program = Path(cmd[0]).name
        if program == "phantomjs":
            return self._render(cmd, kwargs)
        if program == "inkscape":
            return self._rasterize(cmd)
        raise AssertionError(f"unexpected command: {cmd}")

    def _render(self, cmd, kwargs):
        self.render_calls.append(list(cmd))
        slug = Path(urlparse(cmd[2]).path).stem
        page = self.pages.get(slug)
        if page is not None:
            Path(kwargs["cwd"], core.RENDER_OUTPUT_NAME).write_text(page, encoding="utf-8")
        return subprocess.CompletedProcess(cmd, 0, "", "")

    def _rasterize(self, cmd):
        self.raster_calls.append(list(cmd))
        svg_text = Path(cmd[1]).read_text(encoding="utf-8")
        if any(marker in svg_text for marker in self.fail_markers):
            return subprocess.CompletedProcess(cmd, 1, "", "rasterizer crashed")
        target = next(arg.split("=", 1)[1] for arg in cmd if arg.startswith("--export-filename="))
        write_test_png(Path(target))
        return subprocess.CompletedProcess(cmd, 0, "", "")


@pytest.fixture
def fake_tools(tmp_path, monkeypatch):
    tools = FakeTools(tmp_path / "bin")
    monkeypatch.setattr(core.subprocess, "run", tools.run)
    return tools


@pytest.fixture
def make_book(tmp_path):
    def _make(chapters, *, title: str = "Math Book", directory: str = "book") -> Path:
        book_dir = tmp_path / directory
        html_dir = book_dir / "html"
        (html_dir / "stylesheets").mkdir(parents=True, exist_ok=True)
        (html_dir / "stylesheets" / "pygments.css").write_text(".hll { }\n", encoding="utf-8")
        write_test_png(html_dir / "images" / "cover.png", width=60, height=80)

        entries = []
        for slug, fragment in chapters.items():
            entries.append({"slug": slug})
            (html_dir / f"{slug}_fragment.html").write_text(fragment, encoding="utf-8")
            (html_dir / f"{slug}.html").write_text(
                f"<html><body><div id=\"book\">{fragment}</div></body></html>\n", encoding="utf-8"
            )
        manifest = {
            "title": title,
            "author": "Ada Writer",
            "copyright": "2024",
            "uuid": "d430b920-e684-11e1-aff1-0800200c9a66",
            "chapters": entries,
        }
        (book_dir / "book.json").write_text(json.dumps(manifest, indent=2), encoding="utf-8")
        return book_dir

    return _make
