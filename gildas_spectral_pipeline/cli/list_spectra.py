import argparse
import pathlib

import loguru

from .. import SpectrumContainer


def name() -> str:
    return __name__.split(".")[-1]


def help() -> str:
    return "List the headers of the spectra stored in a container file."


def return_exist_file(arg: str) -> pathlib.Path:
    path = pathlib.Path(arg)
    if path.exists():
        return path
    raise argparse.ArgumentTypeError(f"{arg} does not exist!")


def configure_parser(parser: argparse.ArgumentParser):
    parser.add_argument("--container", type=return_exist_file, required=True)
    parser.add_argument("--only_spectral", action="store_true")
    parser.add_argument("--output", type=pathlib.Path)


def main(args: argparse.Namespace):
    with SpectrumContainer(args.container) as container:
        listing = container.listing(args.only_spectral)

    if args.output is None:
        print(listing.to_string(index=False))
    else:
        listing.to_csv(args.output, index=False)
        loguru.logger.info(f"Wrote {len(listing)} entries to {args.output}")
