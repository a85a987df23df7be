import argparse
import os
from pathlib import Path

from nydus_localdisk.__version__ import __version__
from nydus_localdisk.config import settings
from nydus_localdisk.logging import LoggerFactory, setup_logging
from nydus_localdisk.services.convert import convert_image
from nydus_localdisk.storage.exceptions import LocalDiskError

WELCOME = f"""
    Welcome to use nydus-localdisk {__version__}!
    License: Apache-2.0
    """


def _positive_int(value):
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"{value} is not a positive integer")
    return number


def _non_negative_int(value):
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f"{value} is negative")
    return number


def build_parser():
    parser = argparse.ArgumentParser(
        prog="nydus-localdisk",
        description="Provide Nydus localdisk backend support",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument(
        "--trace", action="store_true", help="Enable per-chunk download progress output"
    )
    parser.add_argument("--log-dir", type=Path, default=None, help="Directory for log files")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command")

    convert = subparsers.add_parser(
        "convert",
        help="Convert a Nydus image from the source registry to a GPT disk image file "
        "in localdisk format",
    )
    convert.add_argument(
        "--source",
        default=os.environ.get("SOURCE"),
        help="Source image reference (example: localhost:5000/ubuntu-nydus) [$SOURCE]",
    )
    convert.add_argument(
        "--target",
        type=Path,
        default=Path(
            os.environ.get(
                "TARGET",
                settings.get_setting("default_target_dir", settings.DEFAULT_TARGET_DIR),
            )
        ),
        help="Target localdisk dir [$TARGET]",
    )
    convert.add_argument(
        "--with-temps",
        action="store_true",
        help="Write output.img.partN files with a growing number of layers",
    )
    convert.add_argument(
        "--layer-limit",
        type=_positive_int,
        default=None,
        help="Only convert the first N layers",
    )
    convert.add_argument(
        "--concurrency",
        type=_non_negative_int,
        default=None,
        help="Maximum parallel blob downloads (0 = unbounded)",
    )
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 2
    if not args.source:
        parser.error("the following arguments are required: --source (or $SOURCE)")

    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    log = LoggerFactory.for_convert()
    print(WELCOME)

    try:
        output = convert_image(
            args.source,
            args.target,
            with_temps=args.with_temps,
            layer_limit=args.layer_limit,
            concurrency=args.concurrency,
        )
    except LocalDiskError as error:
        log.error(f"{error.phase} phase failed: {error}")
        return 1
    except KeyboardInterrupt:
        log.warning("Interrupted, partial files are left in place")
        return 130

    log.info(f"Localdisk image ready: {output}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
