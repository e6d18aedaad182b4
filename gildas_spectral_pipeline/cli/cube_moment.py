import argparse
import pathlib

import astropy.io.fits  # type: ignore
import loguru
import numpy

from .. import CubeRecord
from ..logging import capture_builtin_warnings


def name() -> str:
    return __name__.split(".")[-1]


def help() -> str:
    return "Compute the integrated intensity (moment 0) map of a cube."


def return_exist_file(arg: str) -> pathlib.Path:
    path = pathlib.Path(arg)
    if path.exists():
        return path
    raise argparse.ArgumentTypeError(f"{arg} does not exist!")


def configure_parser(parser: argparse.ArgumentParser):
    parser.add_argument("--cube", type=return_exist_file, required=True)
    parser.add_argument("--output", type=pathlib.Path, required=True)
    parser.add_argument("--chan0", type=int)
    parser.add_argument("--chanf", type=int)
    parser.add_argument("--threshold", type=float)
    parser.add_argument("--fits", action="store_true")


def main(args: argparse.Namespace):
    capture_builtin_warnings()

    cube = CubeRecord.read(args.cube)
    loguru.logger.info(f"Read {cube}")
    moment = cube.integrated_intensity(args.chan0, args.chanf, args.threshold)

    if args.fits:
        header = cube.wcs.celestial.to_header()
        header["BUNIT"] = f"{cube.header.unit}.km/s"
        header["OBJECT"] = cube.header.source
        header["LINE"] = cube.header.line
        astropy.io.fits.PrimaryHDU(data=moment, header=header).writeto(
            args.output, overwrite=True
        )
    else:
        numpy.savez(args.output, moment=moment, formula=numpy.array(cube.formula))
    loguru.logger.info(f"Wrote moment 0 map to {args.output}")
