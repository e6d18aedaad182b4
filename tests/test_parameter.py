import pytest

from gildas_spectral_pipeline import (
    DataType,
    HeaderField,
    Parameter,
    ParameterKey as K,
    SpectrumHeader,
    SpectrumLine,
    key_for_description,
)


def test_parameter_types():
    assert Parameter.of(3).data_type is DataType.INTEGER
    assert Parameter.of(3.0).data_type is DataType.DOUBLE
    assert Parameter.of("CO").data_type is DataType.STRING
    assert Parameter.of(" CO  ").as_str() == "CO"
    assert Parameter.of("12.7").as_int() == 12


def test_parameter_descriptions():
    parameter = Parameter.for_key(K.NCHAN, 256)
    assert parameter.description == "Number of channels"
    assert parameter.key == "nchan"
    assert key_for_description("Number of channels") == "nchan"
    assert key_for_description("Nothing like this") is None
    assert Parameter.for_key("swdecal3", 1.0).description == "Frequency offsets"


def test_parameter_key_is_its_value():
    assert str(K.REF_FREQ) == "rfreq"
    assert {str(K.REF_FREQ): 1}["rfreq"] == 1


def test_header_field_order():
    header = SpectrumHeader(num=12, source="ORION", line="CO", off1=1e-5, scan=4)
    assert header[HeaderField.NUM].value == 12
    assert header[HeaderField.SOURCE].value == "ORION"
    assert header[HeaderField.SCAN].value == 4
    assert header.observation_number == 12
    assert SpectrumHeader.from_parameters(header.parameters()) == header


def test_visible_header():
    visible = SpectrumHeader(num=3, teles="30M").visible()
    assert [parameter.key for parameter in visible] == [
        "num",
        "version",
        "source",
        "line",
        "teles",
        "off1",
        "off2",
        "scan",
    ]


def test_header_needs_every_field():
    with pytest.raises(ValueError):
        SpectrumHeader.from_parameters(SpectrumHeader().parameters()[:-1])


def test_line_from_gaussian_parameters():
    parameters = [1.5, 2.0, 5.0, 10.6, 0.1, 0.2, 0.3, 0.4, 40.0, 30.0, 115271.0]
    line = SpectrumLine.from_gaussian_parameters(parameters)
    assert (line.min_channel, line.max_channel) == (30, 40)
    assert line.vel == 1.5
    assert line.peak == 5.0
    assert line.fitted
    assert SpectrumLine.from_dict(line.to_dict()) == line
