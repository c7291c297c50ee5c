import pytest

from poreflow.config import Config
from poreflow.constants import Constant, Constants, c


def test_constants_read_only():
    constants = Constants()
    assert constants.DARCY == pytest.approx(9.869232667160130e-13)
    assert constants["BAR"].unit == "Pa"
    assert "YEAR" in constants
    with pytest.raises(AttributeError):
        constants.NOT_A_CONSTANT
    with pytest.raises(AttributeError):
        constants.DARCY = 1.0


def test_constants_context_overrides_proxy():
    default = c.UNIVERSAL_GAS_CONSTANT
    custom = Constants(UNIVERSAL_GAS_CONSTANT=8.314, LENGTH_SCALE=Constant(2.0, unit="m"))
    with custom() as active:
        assert active is custom
        assert c.UNIVERSAL_GAS_CONSTANT == 8.314
        assert c["LENGTH_SCALE"].unit == "m"
        with Constants()():
            assert c.UNIVERSAL_GAS_CONSTANT == default
        assert c.UNIVERSAL_GAS_CONSTANT == 8.314
    assert c.UNIVERSAL_GAS_CONSTANT == default
    assert len(custom) == len(Constants()) + 1


def test_config_defaults_and_validation():
    config = Config()
    assert config.tol_cnv == 1e-3
    assert config.tol_mb == 1e-7
    assert config.max_nonlinear_iterations == 15
    assert isinstance(config.constants, Constants)
    with pytest.raises(ValueError):
        Config(tol_cnv=0.0)
    with pytest.raises(ValueError):
        Config(max_saturation_change=1.5)
    with pytest.raises(ValueError):
        Config(max_nonlinear_iterations=0)
