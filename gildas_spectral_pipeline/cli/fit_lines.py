import argparse
import pathlib
import pprint

import loguru
import pandas
import tqdm  # type: ignore

from .. import __version__
from .. import FitDivergence, LineFittingEngine, SpectrumContainer
from ..logging import capture_builtin_warnings, LogLimiter


def name() -> str:
    return __name__.split(".")[-1]


def help() -> str:
    return "Reduce the spectra of a container and write the fitted Gaussian lines to a csv file."


def return_exist_file(arg: str) -> pathlib.Path:
    path = pathlib.Path(arg)
    if path.exists():
        return path
    raise argparse.ArgumentTypeError(f"{arg} does not exist!")


def configure_parser(parser: argparse.ArgumentParser):
    parser.add_argument("--container", type=return_exist_file, required=True)
    parser.add_argument("--observation", type=int, nargs="+")
    parser.add_argument("--max_lines", type=int, default=-1)
    parser.add_argument("--times_sigma", type=float, default=3.0)
    parser.add_argument("--output", type=pathlib.Path, default="lines.csv")
    parser.add_argument("--prefix", type=str)
    parser.add_argument("--logs_directory", type=pathlib.Path, default="logs")


def main(args: argparse.Namespace):
    prefix = args.container.stem if args.prefix is None else args.prefix
    log_limiter = LogLimiter(prefix, args.logs_directory, WARNING=30.0)
    capture_builtin_warnings()

    loguru.logger.info(f"Current version: {__version__}")
    loguru.logger.info(
        f"Fitting lines with the following options:\n{pprint.pformat(vars(args), sort_dicts=False)}"
    )

    engine = LineFittingEngine(LineFittingEngine.Options.from_namespace(args))
    rows: list[dict] = list()
    with SpectrumContainer(args.container) as container:
        numbers = (
            container.get_list_of_spectra(only_spectral=True)
            if args.observation is None
            else args.observation
        )
        for number in tqdm.tqdm(numbers, dynamic_ncols=True):
            record = container.get_spectrum(number)
            if record is None:
                continue
            try:
                result = engine.reduce(record, args.max_lines)
            except FitDivergence as e:
                loguru.logger.warning(f"Reduction of observation {number} failed: {e}")
                continue
            loguru.logger.info(
                f"Observation {number}: {len(result.lines)} lines, sigma {result.sigma:.4g}"
            )
            for line in result.lines:
                rows.append(
                    {"observation": number, "sigma": result.sigma}
                    | line.to_dict()
                )

    pandas.DataFrame(rows).to_csv(args.output, index=False)
    loguru.logger.info(f"Wrote {len(rows)} lines to {args.output}")

    log_limiter.log_silence_report()
