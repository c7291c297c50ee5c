import numpy as np
import pytest

from poreflow.constants import c
from poreflow.discretization.domain import discretized_domain, get_1d_reservoir
from poreflow.fluids.densities import ConstantCompressibilityDensities
from poreflow.fluids.eos import GenericCubicEOS, MolecularProperty, MultiComponentMixture
from poreflow.fluids.relperm import BrooksCoreyRelPerm
from poreflow.fluids.viscosities import ConstantViscosities
from poreflow.mesh.cartesian import CartesianMesh
from poreflow.systems.immiscible import ImmiscibleSystem
from poreflow.types import Phase

METHANE = MolecularProperty(
    molar_mass=0.016043,
    critical_pressure=4.599e6,
    critical_temperature=190.56,
    critical_volume=9.86e-5,
    acentric_factor=0.011,
)
DECANE = MolecularProperty(
    molar_mass=0.142285,
    critical_pressure=2.103e6,
    critical_temperature=617.7,
    critical_volume=6.0e-4,
    acentric_factor=0.4884,
)
CO2 = MolecularProperty(
    molar_mass=0.04401,
    critical_pressure=7.3773e6,
    critical_temperature=304.13,
    critical_volume=9.4e-5,
    acentric_factor=0.225,
)


@pytest.fixture
def two_phase_system():
    return ImmiscibleSystem(
        (Phase.AQUEOUS, Phase.LIQUID),
        relative_permeabilities=BrooksCoreyRelPerm(2, exponents=2.0),
        densities=ConstantCompressibilityDensities(
            reference_densities=[1000.0, 800.0], compressibilities=[1e-9, 1e-9]
        ),
        viscosities=ConstantViscosities([1e-3, 5e-3]),
    )


@pytest.fixture
def line_domain():
    return get_1d_reservoir(10, length=100.0, permeability=0.1 * c.DARCY, porosity=0.2)


@pytest.fixture
def box_domain():
    mesh = CartesianMesh((3, 3, 2), extent=(300.0, 300.0, 20.0))
    return discretized_domain(mesh, porosity=0.25, permeability=0.2 * c.DARCY)


@pytest.fixture
def methane_decane_eos():
    return GenericCubicEOS(
        MultiComponentMixture({"C1": METHANE, "C10": DECANE})
    )


@pytest.fixture
def co2_methane_eos():
    return GenericCubicEOS(MultiComponentMixture({"CO2": CO2, "C1": METHANE}))
