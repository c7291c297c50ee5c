import logging
import typing

import attrs
import numpy as np

from poreflow.constants import c
from poreflow.errors import ValidationError
from poreflow.fluids.capillary_pressures import BrooksCoreyCapillaryPressure
from poreflow.fluids.eos import GenericCubicEOS
from poreflow.fluids.flash import flash_mixture
from poreflow.fluids.relperm import BrooksCoreyRelPerm
from poreflow.fluids.viscosities import ConstantViscosities, LBCViscosities
from poreflow.systems.base import FlowSystem, SecondaryValues
from poreflow.systems.variables import OverallMoleFractions, Pressure, PrimaryVariable
from poreflow.types import FloatArray, Phase, StateValues

logger = logging.getLogger(__name__)

__all__ = ["CompositionalSystem", "MultiPhaseCompositionalSystemLV"]


@attrs.frozen(eq=False, init=False)
class CompositionalSystem(FlowSystem):
    """
    Two-phase (liquid-vapor) compositional flow with a cubic equation of state.

    Conserved amounts are component moles. The primary unknowns are the
    pressure and all overall mole fractions but the last. Phase amounts and
    compositions follow from an isothermal flash in every cell.
    """

    eos: GenericCubicEOS
    """Equation of state of the hydrocarbon (or CO2-brine) mixture."""
    phases: typing.Tuple[Phase, ...]
    """Phases, liquid first."""
    relative_permeabilities: BrooksCoreyRelPerm
    """Relative permeability model."""
    viscosities: typing.Union[LBCViscosities, ConstantViscosities]
    """Phase viscosity model."""
    capillary_pressure: typing.Optional[BrooksCoreyCapillaryPressure] = None
    """Optional capillary pressure between liquid and vapor."""

    def __init__(
        self,
        eos: GenericCubicEOS,
        phases: typing.Sequence[typing.Any] = (Phase.LIQUID, Phase.VAPOR),
        relative_permeabilities: typing.Optional[BrooksCoreyRelPerm] = None,
        viscosities: typing.Optional[typing.Union[LBCViscosities, ConstantViscosities]] = None,
        capillary_pressure: typing.Optional[BrooksCoreyCapillaryPressure] = None,
    ) -> None:
        """
        :param eos: Cubic equation of state.
        :param phases: Must be `(Phase.LIQUID, Phase.VAPOR)`.
        :param relative_permeabilities: Defaults to linear relative permeabilities.
        :param viscosities: Defaults to Lohrenz-Bray-Clark viscosities.
        :param capillary_pressure: Optional capillary pressure.
        """
        phases = tuple(Phase(phase) for phase in phases)
        if phases != (Phase.LIQUID, Phase.VAPOR):
            raise ValidationError(
                "Compositional systems support the phases (LIQUID, VAPOR) in that order."
            )
        if relative_permeabilities is None:
            relative_permeabilities = BrooksCoreyRelPerm(2)
        elif relative_permeabilities.number_of_phases != 2:
            raise ValidationError("Compositional systems need a two-phase relative permeability.")
        if viscosities is None:
            viscosities = LBCViscosities()
        self.__attrs_init__(eos, phases, relative_permeabilities, viscosities, capillary_pressure)

    @property
    def number_of_components(self) -> int:
        return self.eos.number_of_components

    @property
    def component_names(self) -> typing.Tuple[str, ...]:
        return self.eos.component_names

    @property
    def component_molar_masses(self) -> FloatArray:
        return self.eos.mixture.molar_masses

    @property
    def primary_variables(self) -> typing.Tuple[PrimaryVariable, ...]:
        return (Pressure(), OverallMoleFractions(number=self.number_of_components))

    @property
    def equation_names(self) -> typing.Tuple[str, ...]:
        return tuple(f"{name}_moles" for name in self.component_names)

    def validate_values(self, values: StateValues, n: int) -> None:
        super().validate_values(values, n)
        if np.any(np.asarray(values["pressure"]) <= 0.0):
            raise ValidationError("Pressures must be positive.")
        z = np.asarray(values["overall_mole_fractions"])
        if np.any(z < 0.0) or not np.allclose(z.sum(axis=0), 1.0, atol=1e-8):
            raise ValidationError("Overall mole fractions must be non-negative and sum to one.")

    def secondary(
        self,
        values: StateValues,
        parameters: StateValues,
        cache: typing.Optional[SecondaryValues] = None,
    ) -> SecondaryValues:
        p = np.asarray(values["pressure"], dtype=np.float64)
        z = np.asarray(values["overall_mole_fractions"], dtype=np.float64)
        n = p.shape[0]
        T = np.broadcast_to(
            np.asarray(parameters.get("temperature", c.DEFAULT_TEMPERATURE), dtype=np.float64),
            (n,),
        ).copy()
        cache = cache or {}
        flash = flash_mixture(
            self.eos,
            p,
            T,
            z,
            k_values=cache.get("k_values"),
            phase_state=cache.get("phase_state"),
        )
        R = float(c.UNIVERSAL_GAS_CONSTANT)
        x = flash.liquid_mole_fractions
        y = flash.vapor_mole_fractions
        V = flash.vapor_fraction
        xi_l = p / (flash.liquid_compressibility * R * T)
        xi_v = p / (flash.vapor_compressibility * R * T)

        volume_l = (1.0 - V) / xi_l
        volume_v = V / xi_v
        total_volume = volume_l + volume_v
        S = np.vstack([volume_l / total_volume, volume_v / total_volume])
        xi = np.vstack([xi_l, xi_v])
        MW = self.component_molar_masses
        rho = xi * np.vstack([MW @ x, MW @ y])

        mu = parameters.get("phase_viscosities")
        if mu is None:
            if isinstance(self.viscosities, LBCViscosities):
                mixture = self.eos.mixture
                mu = np.vstack(
                    [
                        self.viscosities(mixture, T, x, xi_l),
                        self.viscosities(mixture, T, y, xi_v),
                    ]
                )
            else:
                mu = self.viscosities(p, 2)
        kr = self.relative_permeabilities(S)
        if self.capillary_pressure is not None:
            pc = self.capillary_pressure(S)
        else:
            pc = np.zeros((2, n))
        X = np.stack([x, y], axis=1)
        concentrations = np.einsum("cpn,pn->cn", X, xi * S)
        return {
            "pressure": p,
            "saturations": S,
            "phase_mass_densities": rho,
            "phase_amount_densities": xi,
            "component_phase_fractions": X,
            "phase_viscosities": mu,
            "relative_permeabilities": kr,
            "mobilities": kr / mu,
            "capillary_pressures": pc,
            "phase_pressures": p[None, :] + pc,
            "component_concentrations": concentrations,
            "total_amount_density": 1.0 / total_volume,
            "vapor_fraction": V,
            "k_values": flash.k_values,
            "phase_state": flash.phase_state,
        }

    def _injection_amounts(
        self, fractions: FloatArray, kind: str, secondary: SecondaryValues, cell: int
    ) -> FloatArray:
        if kind != "mass":
            raise ValidationError("Compositional sources must be mass based.")
        return fractions / (fractions @ self.component_molar_masses)

    def _boundary_inflow_amounts(
        self, fractions: FloatArray, secondary: SecondaryValues, cell: int
    ) -> FloatArray:
        return fractions * secondary["total_amount_density"][cell]

    def reference_amount_densities(self, secondary: SecondaryValues) -> FloatArray:
        return np.full(
            self.number_of_components, float(secondary["total_amount_density"].mean())
        )

    def surface_volume_rates(
        self,
        amount_rates: FloatArray,
        reference_densities: typing.Optional[FloatArray] = None,
    ) -> typing.Dict[Phase, float]:
        """
        Flash the stream at standard conditions and return the liquid and
        vapor volume rates (m³/s).
        """
        total = float(amount_rates.sum())
        if total == 0.0:
            return {Phase.LIQUID: 0.0, Phase.VAPOR: 0.0}
        z = np.clip(amount_rates * np.sign(total), 0.0, None)
        if z.sum() <= 0.0:
            return {Phase.LIQUID: 0.0, Phase.VAPOR: 0.0}
        z = z / z.sum()
        p_std = float(c.STANDARD_PRESSURE)
        T_std = float(c.STANDARD_TEMPERATURE)
        flash = flash_mixture(self.eos, p_std, T_std, z[:, None])
        R = float(c.UNIVERSAL_GAS_CONSTANT)
        V = float(flash.vapor_fraction[0])
        xi_l = p_std / (float(flash.liquid_compressibility[0]) * R * T_std)
        xi_v = p_std / (float(flash.vapor_compressibility[0]) * R * T_std)
        return {
            Phase.LIQUID: total * (1.0 - V) / xi_l,
            Phase.VAPOR: total * V / xi_v,
        }

    def outputs(
        self,
        values: StateValues,
        secondary: SecondaryValues,
        volumes: typing.Optional[FloatArray] = None,
    ) -> StateValues:
        outputs = super().outputs(values, secondary, volumes)
        outputs["saturations"] = secondary["saturations"].copy()
        outputs["vapor_fraction"] = secondary["vapor_fraction"].copy()
        outputs["k_values"] = secondary["k_values"].copy()
        outputs["phase_state"] = secondary["phase_state"].copy()
        return outputs

    def __repr__(self) -> str:
        return f"{type(self).__name__}({', '.join(self.component_names)})"


MultiPhaseCompositionalSystemLV = CompositionalSystem
