import argparse
import sys
import typing

from .cli import cube_moment, fit_lines, list_spectra

SUBCOMMANDS = [
    list_spectra,
    fit_lines,
    cube_moment,
]


def build_parser() -> tuple[argparse.ArgumentParser, dict[str, typing.Callable]]:
    parser = argparse.ArgumentParser(
        prog=f"python -m {__package__}",
        description=(
            "Inspect CLASS 30m spectrum containers, fit Gaussian lines to their "
            "spectra and compute moment maps of LMV cubes."
        ),
    )
    subparsers = parser.add_subparsers(
        title="tasks",
        description="Each task reads GILDAS files and writes tables or maps.",
        dest="command",
        required=True,
        metavar="TASK",
    )

    entry_points = {}
    for subcommand in SUBCOMMANDS:
        subparser = subparsers.add_parser(subcommand.name(), help=subcommand.help())
        subcommand.configure_parser(subparser)
        entry_points[subcommand.name()] = subcommand.main
    return parser, entry_points


def main(argv: list[str] | None = None):
    parser, entry_points = build_parser()
    args = parser.parse_args(argv)
    sys.exit(entry_points[args.command](args))


if __name__ == "__main__":
    main()
