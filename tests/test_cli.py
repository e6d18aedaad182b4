import argparse

import astropy.io.fits  # type: ignore
import numpy
import pandas
import pytest

from gildas_spectral_pipeline import write_container
from gildas_spectral_pipeline.__main__ import build_parser, main
from gildas_spectral_pipeline.cli import cube_moment, fit_lines, list_spectra
from gildas_spectral_pipeline.logging import release_builtin_warnings

from conftest import make_volume
from test_line_fitting import gaussian_record


def parse(subcommand, argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser()
    subcommand.configure_parser(parser)
    return parser.parse_args(argv)


@pytest.fixture(autouse=True)
def release_warnings():
    yield
    release_builtin_warnings()


def test_names():
    assert list_spectra.name() == "list_spectra"
    assert fit_lines.name() == "fit_lines"
    assert cube_moment.name() == "cube_moment"


def test_main_dispatches_to_the_task(container_path, capsys):
    parser, entry_points = build_parser()
    assert set(entry_points) == {"list_spectra", "fit_lines", "cube_moment"}
    assert "moment maps of LMV cubes" in parser.description

    with pytest.raises(SystemExit) as exit_info:
        main(["list_spectra", "--container", str(container_path)])
    assert exit_info.value.code is None
    assert "ORION" in capsys.readouterr().out
    with pytest.raises(SystemExit) as exit_info:
        main([])
    assert exit_info.value.code == 2


def test_missing_input_is_rejected(tmp_path):
    with pytest.raises(SystemExit):
        parse(list_spectra, ["--container", str(tmp_path / "missing.30m")])


def test_list_spectra(tmp_path, container_path, capsys):
    list_spectra.main(parse(list_spectra, ["--container", str(container_path)]))
    assert "ORION" in capsys.readouterr().out

    output = tmp_path / "listing.csv"
    list_spectra.main(
        parse(list_spectra, ["--container", str(container_path), "--output", str(output)])
    )
    listing = pandas.read_csv(output)
    assert listing["num"].tolist() == [10, 7, 22]


def test_fit_lines(tmp_path):
    container = tmp_path / "gaussian.30m"
    write_container(container, [gaussian_record()])
    output = tmp_path / "lines.csv"
    args = parse(
        fit_lines,
        [
            "--container",
            str(container),
            "--output",
            str(output),
            "--logs_directory",
            str(tmp_path / "logs"),
        ],
    )
    fit_lines.main(args)
    lines = pandas.read_csv(output)
    assert set(lines["observation"]) == {1}
    assert (tmp_path / "logs" / "gaussian.2.info.log").exists()


def test_cube_moment(tmp_path, cube):
    path = tmp_path / "cube.lmv"
    cube.write(path)

    output = tmp_path / "moment.npz"
    cube_moment.main(
        parse(cube_moment, ["--cube", str(path), "--output", str(output), "--chan0", "1"])
    )
    with numpy.load(output) as result:
        numpy.testing.assert_allclose(
            result["moment"], 0.5 * make_volume()[1:].sum(axis=0)
        )

    output = tmp_path / "moment.fits"
    cube_moment.main(
        parse(cube_moment, ["--cube", str(path), "--output", str(output), "--fits"])
    )
    with astropy.io.fits.open(output) as hdulist:
        assert hdulist[0].data.shape == (5, 4)
        assert hdulist[0].header["OBJECT"] == "ORION"
