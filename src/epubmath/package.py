"""EPUB scaffolding, templates and archive for epubmath."""

from __future__ import annotations

import mimetypes
import shutil
import zipfile
from html import escape
from pathlib import Path
from typing import List, Sequence

from .core import LOG, BookManifest, BuildConfig, CacheIOFailure, ChapterBody, safe_write_text

MIMETYPE = "application/epub+zip"
PUBLISHER = "Softcover"
EXCLUDED_NAMES = {".DS_Store", ".gitkeep"}


def prepare_package_dirs(config: BuildConfig) -> None:
    for path in (
        config.epub_dir,
        config.oebps_dir,
        config.oebps_dir / "styles",
        config.epub_dir / "META-INF",
        config.texmath_dir,
        config.out_dir / "ebooks",
    ):
        path.mkdir(parents=True, exist_ok=True)


def write_mimetype(config: BuildConfig) -> None:
    (config.epub_dir / "mimetype").write_text(MIMETYPE, encoding="ascii")


def container_xml() -> str:
    return """<?xml version="1.0"?>
<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">
    <rootfiles>
        <rootfile full-path="OEBPS/content.opf" media-type="application/oebps-package+xml"/>
   </rootfiles>
</container>
"""


def write_container_xml(config: BuildConfig) -> None:
    safe_write_text(config.epub_dir / "META-INF" / "container.xml", container_xml())


def copy_image_files(config: BuildConfig) -> None:
    source = config.html_dir / "images"
    if not source.is_dir():
        return
    target = config.oebps_dir / "images"
    try:
        shutil.copytree(
            source,
            target,
            dirs_exist_ok=True,
            ignore=shutil.ignore_patterns("texmath", *EXCLUDED_NAMES),
        )
    except OSError as exc:
        raise CacheIOFailure(f"Unable to copy images {source} -> {target}: {exc}") from exc
    if config.verbose:
        LOG.info("Copied images: %s -> %s", source, target)


def copy_style_files(config: BuildConfig) -> List[str]:
    source = config.html_dir / "stylesheets"
    target = config.oebps_dir / "styles"
    names: List[str] = []
    if not source.is_dir():
        return names
    for css in sorted(source.glob("*.css")):
        shutil.copyfile(css, target / css.name)
        names.append(css.name)
    return names


def chapter_template(title: str, content: str, stylesheets: Sequence[str]) -> str:
    links = "\n".join(
        f'  <link rel="stylesheet" href="styles/{escape(name)}" type="text/css" />' for name in stylesheets
    )
    return f"""<?xml version="1.0" encoding="utf-8"?>
<!DOCTYPE html PUBLIC "-//W3C//DTD XHTML 1.1//EN"
  "http://www.w3.org/TR/xhtml11/DTD/xhtml11.dtd">

<html xmlns="http://www.w3.org/1999/xhtml">
<head>
  <title>{escape(title)}</title>
{links}
</head>

<body>
  {content}
</body>
</html>
"""


def write_chapter_files(bodies: Sequence[ChapterBody], config: BuildConfig, stylesheets: Sequence[str]) -> None:
    for body in bodies:
        chapter = body.chapter
        safe_write_text(
            config.oebps_dir / chapter.output_name,
            chapter_template(chapter.title, body.markup, stylesheets),
        )


def _guess_mime_type(path: Path) -> str:
    mime, _ = mimetypes.guess_type(path.name)
    return mime or "application/octet-stream"


def image_manifest_items(config: BuildConfig) -> List[str]:
    images_dir = config.oebps_dir / "images"
    items: List[str] = []
    if not images_dir.is_dir():
        return items
    for image in sorted(p for p in images_dir.rglob("*") if p.is_file() and p.name not in EXCLUDED_NAMES):
        href = image.relative_to(config.oebps_dir).as_posix()
        # Prefixed because ids may not start with a digit.
        item_id = f"img-{image.stem}"
        items.append(f'<item id="{escape(item_id)}" href="{escape(href)}" media-type="{_guess_mime_type(image)}"/>')
    return items


def content_opf(book: BookManifest, bodies: Sequence[ChapterBody], config: BuildConfig, stylesheets: Sequence[str]) -> str:
    styles = [
        f'<item id="{escape(name)}" href="styles/{escape(name)}" media-type="text/css"/>' for name in stylesheets
    ]
    chapters = [
        f'<item id="{escape(b.chapter.slug)}" href="{escape(b.chapter.output_name)}" media-type="application/xhtml+xml"/>'
        for b in bodies
    ]
    spine = [f'<itemref idref="{escape(b.chapter.slug)}"/>' for b in bodies]
    manifest_items = "\n        ".join(styles + chapters + image_manifest_items(config))
    spine_items = "\n        ".join(spine)
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<package xmlns="http://www.idpf.org/2007/opf" unique-identifier="BookID" version="2.0">
    <metadata xmlns:dc="http://purl.org/dc/elements/1.1/" xmlns:opf="http://www.idpf.org/2007/opf">
        <dc:title>{escape(book.title)}</dc:title>
        <dc:language>en</dc:language>
        <dc:rights>Copyright (c) {escape(book.copyright)} {escape(book.author)}</dc:rights>
        <dc:creator opf:role="aut">{escape(book.author)}</dc:creator>
        <dc:publisher>{PUBLISHER}</dc:publisher>
        <dc:identifier id="BookID" opf:scheme="UUID">{escape(book.uuid)}</dc:identifier>
    </metadata>
    <manifest>
        <item id="ncx" href="toc.ncx" media-type="application/x-dtbncx+xml"/>
        {manifest_items}
    </manifest>
    <spine toc="ncx">
        {spine_items}
    </spine>
    <guide>
    </guide>
</package>
"""


def toc_ncx(book: BookManifest, bodies: Sequence[ChapterBody]) -> str:
    nav: List[str] = []
    for n, body in enumerate(bodies, start=1):
        chapter = body.chapter
        nav.append(f'<navPoint id="{escape(chapter.slug)}" playOrder="{n}">')
        nav.append(f"    <navLabel><text>{escape(chapter.title)}</text></navLabel>")
        nav.append(f'    <content src="{escape(chapter.output_name)}"/>')
        nav.append("</navPoint>")
    nav_points = "\n        ".join(nav)
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE ncx PUBLIC "-//NISO//DTD ncx 2005-1//EN"
   "http://www.daisy.org/z3986/2005/ncx-2005-1.dtd">

<ncx xmlns="http://www.daisy.org/z3986/2005/ncx/" version="2005-1">
    <head>
        <meta name="dtb:uid" content="{escape(book.uuid)}"/>
        <meta name="dtb:depth" content="2"/>
        <meta name="dtb:totalPageCount" content="0"/>
        <meta name="dtb:maxPageNumber" content="0"/>
    </head>
    <docTitle>
        <text>{escape(book.title)}</text>
    </docTitle>
    <navMap>
        {nav_points}
    </navMap>
</ncx>
"""


def _archive_members(root: Path, subdir: str) -> List[Path]:
    base = root / subdir
    if not base.is_dir():
        return []
    return sorted(p for p in base.rglob("*") if p.is_file() and p.name not in EXCLUDED_NAMES)


def make_epub(book: BookManifest, config: BuildConfig) -> Path:
    """Zip the EPUB tree into ``ebooks/<filename>.epub``.

    ``mimetype`` goes first and uncompressed; readers sniff it at a fixed offset.
    """
    epub_path = config.out_dir / "ebooks" / f"{book.filename}.epub"
    tmp_path = epub_path.with_suffix(".zip")
    with zipfile.ZipFile(tmp_path, "w") as zf:
        zf.write(config.epub_dir / "mimetype", "mimetype", compress_type=zipfile.ZIP_STORED)
        for subdir in ("META-INF", "OEBPS"):
            for member in _archive_members(config.epub_dir, subdir):
                arcname = member.relative_to(config.epub_dir).as_posix()
                zf.write(member, arcname, compress_type=zipfile.ZIP_DEFLATED, compresslevel=9)
    tmp_path.replace(epub_path)
    return epub_path


def assemble_package(book: BookManifest, bodies: Sequence[ChapterBody], config: BuildConfig) -> Path:
    write_mimetype(config)
    write_container_xml(config)
    stylesheets = copy_style_files(config)
    write_chapter_files(bodies, config, stylesheets)
    safe_write_text(config.oebps_dir / "toc.ncx", toc_ncx(book, bodies))
    safe_write_text(config.oebps_dir / "content.opf", content_opf(book, bodies, config, stylesheets))
    epub_path = make_epub(book, config)
    if config.verbose:
        LOG.info("EPUB written: %s", epub_path)
    return epub_path
