"""Command-line interface for epubmath."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from .version import __version__


def _get_usage() -> str:
    return (
        f"epubmath {__version__}\n"
        "Usage:\n"
        "  epubmath [--help] [--version|--ver]\n"
        "  epubmath --from-dir BOOK_DIR --to-dir OUT_DIR [options]\n\n"
        "Options:\n"
        "  --renderer PATH              PhantomJS executable (default: phantomjs)\n"
        "  --render-script PATH         Script passed to the renderer (default: bundled page.js)\n"
        "  --rasterizer PATH            Inkscape executable (default: inkscape)\n"
        "  --scale-factor N             PNG pixels per ex of math height (default: 9)\n"
        "  --render-timeout SECONDS     Timeout for each render (default: 120)\n"
        "  --raster-timeout SECONDS     Timeout for each rasterization (default: 60)\n"
        "  --jobs N                     Chapters processed in parallel (default: 1)\n"
        "  --skip-package               Process chapters and cache, do not write the EPUB\n"
        "  --verbose                    Verbose progress logs\n"
        "  --debug                      Debug logs"
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("--help", action="store_true")
    parser.add_argument("--version", action="store_true")
    parser.add_argument("--ver", action="store_true")
    parser.add_argument("--from-dir", help="Book directory containing book.json and html/")
    parser.add_argument("--to-dir", help="Build directory (epub/ tree, math cache, ebooks/)")
    parser.add_argument("--renderer", default=None, help="PhantomJS executable (fallback: EPUBMATH_RENDERER env var)")
    parser.add_argument("--render-script", default=None, help="Script run by the renderer")
    parser.add_argument(
        "--rasterizer",
        default=None,
        help="Inkscape executable (fallback: EPUBMATH_RASTERIZER env var)",
    )
    parser.add_argument("--scale-factor", type=float, default=None, help="PNG pixels per ex of math height")
    parser.add_argument("--render-timeout", type=float, default=None, help="Seconds allowed for each render")
    parser.add_argument("--raster-timeout", type=float, default=None, help="Seconds allowed for each rasterization")
    parser.add_argument("--jobs", type=int, default=1, help="Number of chapters processed in parallel")
    parser.add_argument("--skip-package", action="store_true", help="Do not assemble the EPUB archive")
    parser.add_argument("--verbose", action="store_true", help="Verbose progress logs")
    parser.add_argument("--debug", action="store_true", help="Debug logs")
    return parser


def _validate_numeric_args(args: argparse.Namespace) -> str | None:
    if args.scale_factor is not None and args.scale_factor <= 0:
        return "Invalid value for --scale-factor: must be > 0"
    if args.render_timeout is not None and args.render_timeout <= 0:
        return "Invalid value for --render-timeout: must be > 0"
    if args.raster_timeout is not None and args.raster_timeout <= 0:
        return "Invalid value for --raster-timeout: must be > 0"
    if args.jobs is None or args.jobs <= 0:
        return "Invalid value for --jobs: must be > 0"
    return None


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    parser = _build_parser()
    args, unknown = parser.parse_known_args(argv)
    if unknown:
        print(_get_usage())
        return 2

    if not argv or args.help:
        print(_get_usage())
        return 0

    if args.version or args.ver:
        print(__version__)
        return 0

    try:
        from epubmath import core
    except Exception as exc:
        print(f"Unable to import epubmath core: {exc}", file=sys.stderr)
        return 6

    numeric_error = _validate_numeric_args(args)
    if numeric_error:
        print(numeric_error, file=sys.stderr)
        return core.EXIT_INVALID_ARGS

    if not args.from_dir or not args.to_dir:
        print(_get_usage())
        print("Options --from-dir and --to-dir are required unless --help or --version/--ver is used", file=sys.stderr)
        return core.EXIT_INVALID_ARGS

    from_dir = Path(args.from_dir).expanduser().resolve()
    to_dir = Path(args.to_dir).expanduser().resolve()

    if not from_dir.exists() or not from_dir.is_dir():
        print(f"Book directory not found: {from_dir}", file=sys.stderr)
        return core.EXIT_INVALID_ARGS
    if not (from_dir / core.BOOK_MANIFEST_NAME).exists():
        print(f"{core.BOOK_MANIFEST_NAME} not found in {from_dir}", file=sys.stderr)
        return core.EXIT_INVALID_ARGS
    if not (from_dir / core.HTML_DIR_NAME).is_dir():
        print(f"{core.HTML_DIR_NAME} directory not found in {from_dir}", file=sys.stderr)
        return core.EXIT_INVALID_ARGS

    if to_dir.exists() and not to_dir.is_dir():
        print(f"Output path is not a directory: {to_dir}", file=sys.stderr)
        return core.EXIT_OUTPUT_DIR

    core.setup_logging(args.verbose, args.debug)

    config = core.BuildConfig(
        from_dir=from_dir,
        out_dir=to_dir,
        renderer=str(args.renderer or os.environ.get(core.RENDERER_ENV) or core.RENDERER_DEFAULT),
        render_script=Path(args.render_script).expanduser() if args.render_script else core.RENDER_SCRIPT_DEFAULT,
        rasterizer=str(args.rasterizer or os.environ.get(core.RASTERIZER_ENV) or core.RASTERIZER_DEFAULT),
        scale_factor=float(args.scale_factor or core.SCALE_FACTOR_DEFAULT),
        render_timeout=float(args.render_timeout or core.RENDER_TIMEOUT_DEFAULT),
        raster_timeout=float(args.raster_timeout or core.RASTER_TIMEOUT_DEFAULT),
        jobs=int(args.jobs),
        package=not args.skip_package,
        verbose=bool(args.verbose),
        debug=bool(args.debug),
    )

    try:
        result = core.run_build_pipeline(config)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return core.EXIT_INVALID_ARGS
    except core.ToolNotFound as exc:
        print(str(exc), file=sys.stderr)
        return core.EXIT_TOOL_MISSING
    except RuntimeError as exc:
        print(f"Build failed: {exc}", file=sys.stderr)
        return core.EXIT_BUILD_FAILED

    if args.verbose and result.epub_path is not None:
        print(f"EPUB written to {result.epub_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
