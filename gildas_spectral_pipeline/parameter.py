import dataclasses
import enum
import numbers

__all__ = [
    "DataType",
    "Parameter",
    "ParameterKey",
    "DESCRIPTIONS",
    "key_for_description",
    "Projection",
    "CoordinateType",
    "VelocityType",
    "DataKind",
]


class DataType(enum.Enum):
    DOUBLE = enum.auto()
    INTEGER = enum.auto()
    STRING = enum.auto()


class ParameterKey(str, enum.Enum):
    NUM = "num"
    BLOCK = "block"
    VERSION = "version"
    SOURCE = "source"
    LINE = "line"
    TELES = "teles"
    LDOBS = "ldobs"
    LDRED = "ldred"
    OFF1 = "off1"
    OFF2 = "off2"
    TYPEC = "typec"
    KIND = "kind"
    QUALITY = "qual"
    SCAN = "scan"
    POSA = "posa"
    UT_TIME = "uttime"
    LST_TIME = "lsttim"
    AZIMUTH = "azimu"
    ELEVATION = "elevat"
    TAU = "tau"
    TSYS = "tsys"
    INTEG = "integ"
    EPOCH = "epoch"
    LAMBDA = "lambda"
    BETA = "beta"
    LAMBDA_OFF = "lamboff"
    BETA_OFF = "betaoff"
    PROJECTION = "proj"
    REF_FREQ = "rfreq"
    NCHAN = "nchan"
    REF_CHAN = "refchan"
    FREQ_RESOL = "fresol"
    FREQ_OFF = "freqoff"
    VEL_RESOL = "vres"
    REF_VEL = "voff"
    BAD = "bad"
    IMAGE = "image"
    VEL_TYPE = "veltype"
    DOPPLER = "doppler"
    BEAM_EFF = "beameff"
    FORW_EFF = "forweff"
    GAIN_IM = "gain_im"
    H2OMM = "h2omm"
    PAMB = "pamb"
    TAMB = "tamb"
    TATMSIG = "tatmsig"
    TCHOP = "tchop"
    TCOLD = "tcold"
    TAUSIG = "tausig"
    TAUIMA = "tauima"
    TATMIMG = "tatmimg"
    TREC = "trec"
    MODE = "mode"
    FACTOR = "factor"
    ALTITUDE = "altitud"
    COUNT1 = "count1"
    COUNT2 = "count2"
    COUNT3 = "count3"
    LONOFF = "lonoff"
    LATOFF = "latoff"
    LON = "lon"
    LAT = "lat"
    OTF_NDUMPS = "otfndum"
    OTF_LEN_HEADER = "otflhea"
    OTF_LEN_DATA = "otfldat"
    OTF_LEN_DUMP = "otfldum"
    NPHASE = "nphase"
    SWMODE = "swmode"
    SWDECALAGE = "swdecal"
    SWDURATION = "swdurat"
    SWPOIDS = "swpoids"
    SWLDECAL = "swldecal"
    SWBDECAL = "swbdecal"
    MYVERSION = "myver"
    SIGMA = "sigma"
    GAUSS = "gauss"
    COL_AZ = "COL_AZ"
    COL_EL = "COL_EL"

    def __str__(self) -> str:
        return self.value


DESCRIPTIONS: dict[str, str] = {
    "num": "Observation number",
    "block": "Number of block",
    "version": "Version of the spectrum",
    "source": "Source of the spectrum",
    "line": "Name of the line",
    "teles": "Backend of the telescope",
    "ldobs": "Date of observation",
    "ldred": "Date of reduction",
    "off1": "Offset on X",
    "off2": "Offset on Y",
    "typec": "Type of coordinates",
    "kind": "Type of data",
    "qual": "Quality of data",
    "scan": "Scan number",
    "posa": "Position angle",
    "uttime": "UT of observation",
    "lsttim": "LST of observation",
    "azimu": "Azimuth",
    "elevat": "Elevation",
    "tau": "Opacity",
    "tsys": "System temperature",
    "integ": "Integration time",
    "epoch": "Epoch of coordinates",
    "lambda": "Lambda",
    "beta": "Beta",
    "lamboff": "Offset in lambda",
    "betaoff": "Offset in beta",
    "proj": "Projection system",
    "rfreq": "Rest Frequency",
    "nchan": "Number of channels",
    "refchan": "Reference channel",
    "fresol": "Frequency resolution",
    "freqoff": "Frequency offset",
    "vres": "Velocity resolution",
    "voff": "Velocity at reference channel",
    "bad": "Blanking value",
    "image": "Image frequency",
    "veltype": "Type of velocity",
    "doppler": "Doppler correction",
    "beameff": "Beam efficiency",
    "forweff": "Forward efficiency",
    "gain_im": "Image/Signal gain ratio",
    "h2omm": "mm of water vapor",
    "pamb": "Ambient pressure",
    "tamb": "Ambient temperature",
    "tatmsig": "Atmosphere temperature in signal band",
    "tchop": "Chopper temperature",
    "tcold": "Cold temperature",
    "tausig": "Opacity in signal band",
    "tauima": "Opacity in image band",
    "tatmimg": "Atmosphere temp in image band",
    "trec": "Receiver temperature",
    "mode": "Calibration mode",
    "factor": "Applied calibration factor",
    "altitud": "Site elevation",
    "count1": "Power of atmosphere",
    "count2": "Power of chopper",
    "count3": "Power of cold",
    "lonoff": "Longitude offset for sky measurement",
    "latoff": "Latitude offset for sky measurement",
    "lon": "Longitude of the observatory",
    "lat": "Latitude of the observatory",
    "otfndum": "Number of records",
    "otflhea": "Length of data header",
    "otfldat": "Length of line data",
    "otfldum": "Length of record",
    "nphase": "Number of phases",
    "swmode": "Switching mode",
    "swdecal": "Frequency offsets",
    "swdurat": "Time per phase",
    "swpoids": "Weight of each phase",
    "swldecal": "Lambda offsets of each phase",
    "swbdecal": "Beta offsets of each phase",
    "myver": "Internal version",
    "sigma": "RMS of the spectrum",
    "gauss": "Gauss fitting parameters",
}

_KEYS_BY_DESCRIPTION = {
    description: key for key, description in reversed(DESCRIPTIONS.items())
}


def key_for_description(description: str) -> str | None:
    """Map a human-readable description back to its canonical short key."""
    return _KEYS_BY_DESCRIPTION.get(description.strip())


@dataclasses.dataclass(frozen=True)
class Parameter:
    value: float | int | str
    description: str = ""
    data_type: DataType = DataType.DOUBLE

    @classmethod
    def of(cls, value: float | int | str, description: str = "") -> "Parameter":
        if isinstance(value, str):
            data_type = DataType.STRING
        elif isinstance(value, numbers.Integral):
            value = int(value)
            data_type = DataType.INTEGER
        else:
            data_type = DataType.DOUBLE
            value = float(value)
        return cls(value, description, data_type)

    @classmethod
    def for_key(cls, key: str, value: float | int | str) -> "Parameter":
        key = str(key)
        description = DESCRIPTIONS.get(key)
        if description is None:
            # per-phase keys such as "swdecal0"
            description = DESCRIPTIONS.get(key.rstrip("0123456789"), "")
        return cls.of(value, description)

    @property
    def key(self) -> str | None:
        return key_for_description(self.description)

    def as_float(self) -> float:
        return float(self.value)

    def as_int(self) -> int:
        return int(float(self.value))

    def as_str(self) -> str:
        return str(self.value).strip()


class Projection(enum.IntEnum):
    NONE = 0
    GNOMONIC = 1
    ORTHO = 2
    AZIMUTHAL = 3
    STEREO = 4
    LAMBERT = 5
    AITOFF = 6
    RADIO = 7


class CoordinateType(enum.IntEnum):
    UNKNOWN = 1
    EQUATORIAL = 2
    GALACTIC = 3
    HORIZONTAL = 4


class VelocityType(enum.IntEnum):
    AUTO = -1
    UNKNOWN = 0
    LSR = 1
    HELIOCENTRIC = 2
    EAR = 3


class DataKind(enum.IntEnum):
    SPECTRAL = 0
    CONTINUUM = 1
