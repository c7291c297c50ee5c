import logging
import typing

import attrs
import numpy as np

from poreflow.errors import ValidationError
from poreflow.fluids.capillary_pressures import BrooksCoreyCapillaryPressure
from poreflow.fluids.densities import ConstantCompressibilityDensities
from poreflow.fluids.relperm import BrooksCoreyRelPerm
from poreflow.fluids.viscosities import ConstantViscosities
from poreflow.systems.base import FlowSystem, SecondaryValues
from poreflow.systems.variables import Pressure, PrimaryVariable, Saturations
from poreflow.types import FloatArray, Phase, StateValues

if typing.TYPE_CHECKING:
    from poreflow.discretization.domain import DiscretizedDomain

logger = logging.getLogger(__name__)

__all__ = ["ImmiscibleSystem"]


def _as_phases(value: typing.Any) -> typing.Tuple[Phase, ...]:
    if isinstance(value, (Phase, str)):
        value = (value,)
    phases = tuple(Phase(phase) for phase in value)
    if not phases:
        raise ValidationError("An immiscible system needs at least one phase.")
    if len(set(phases)) != len(phases):
        raise ValidationError(f"Duplicate phases in {phases}")
    return phases


@attrs.frozen(eq=False, init=False)
class ImmiscibleSystem(FlowSystem):
    """
    Immiscible multiphase flow where each phase is its own component.

    Conserved amounts are phase masses (kg). The primary unknowns are the
    pressure of the first phase and all saturations but the last.
    """

    phases: typing.Tuple[Phase, ...]
    """Phases in equation order."""
    relative_permeabilities: BrooksCoreyRelPerm
    """Relative permeability model."""
    densities: ConstantCompressibilityDensities
    """Phase density model."""
    viscosities: ConstantViscosities
    """Phase viscosity model."""
    capillary_pressure: typing.Optional[BrooksCoreyCapillaryPressure] = None
    """Optional capillary pressure model."""

    def __init__(
        self,
        phases: typing.Any,
        relative_permeabilities: typing.Optional[BrooksCoreyRelPerm] = None,
        densities: typing.Optional[ConstantCompressibilityDensities] = None,
        viscosities: typing.Optional[ConstantViscosities] = None,
        capillary_pressure: typing.Optional[BrooksCoreyCapillaryPressure] = None,
    ) -> None:
        """
        :param phases: Phases (e.g. `(Phase.AQUEOUS, Phase.LIQUID)`).
        :param relative_permeabilities: Defaults to linear relative permeabilities.
        :param densities: Defaults to `ConstantCompressibilityDensities()`.
        :param viscosities: Defaults to `ConstantViscosities()`.
        :param capillary_pressure: Optional capillary pressure.
        """
        phases = _as_phases(phases)
        nph = len(phases)
        if relative_permeabilities is None:
            relative_permeabilities = BrooksCoreyRelPerm(nph)
        elif relative_permeabilities.number_of_phases != nph:
            raise ValidationError(
                f"Relative permeability model is for {relative_permeabilities.number_of_phases} "
                f"phases, system has {nph}"
            )
        densities = densities if densities is not None else ConstantCompressibilityDensities()
        viscosities = viscosities if viscosities is not None else ConstantViscosities()
        # Fail early on per-phase length mismatches
        densities.phase_values(densities.reference_densities, nph)
        densities.phase_values(densities.compressibilities, nph)
        viscosities.phase_values(nph)
        self.__attrs_init__(
            phases, relative_permeabilities, densities, viscosities, capillary_pressure
        )

    @property
    def number_of_components(self) -> int:
        return self.number_of_phases

    @property
    def component_molar_masses(self) -> FloatArray:
        return np.ones(self.number_of_phases)

    @property
    def primary_variables(self) -> typing.Tuple[PrimaryVariable, ...]:
        if self.number_of_phases == 1:
            return (Pressure(),)
        return (Pressure(), Saturations(number=self.number_of_phases))

    @property
    def equation_names(self) -> typing.Tuple[str, ...]:
        return tuple(f"{phase.value}_mass" for phase in self.phases)

    @property
    def reference_densities(self) -> FloatArray:
        """Phase densities at the density model's reference pressure (kg/m³)."""
        return self.densities.phase_values(
            self.densities.reference_densities, self.number_of_phases
        ).copy()

    def default_parameters(self, domain: "DiscretizedDomain") -> StateValues:
        parameters = super().default_parameters(domain)
        parameters["phase_viscosities"] = np.repeat(
            self.viscosities.phase_values(self.number_of_phases)[:, None],
            domain.number_of_cells,
            axis=1,
        )
        return parameters

    def initial_values(self, n: int, **values: typing.Any) -> StateValues:
        if self.number_of_phases == 1:
            values.pop("saturations", None)
            state = super().initial_values(n, **values)
            state["saturations"] = np.ones((1, n))
            return state
        return super().initial_values(n, **values)

    def validate_values(self, values: StateValues, n: int) -> None:
        super().validate_values(values, n)
        if np.any(np.asarray(values["pressure"]) <= 0.0):
            raise ValidationError("Pressures must be positive.")
        if self.number_of_phases > 1:
            S = np.asarray(values["saturations"])
            if np.any(S < 0.0) or not np.allclose(S.sum(axis=0), 1.0, atol=1e-8):
                raise ValidationError("Saturations must be non-negative and sum to one.")

    def secondary(
        self,
        values: StateValues,
        parameters: StateValues,
        cache: typing.Optional[SecondaryValues] = None,
    ) -> SecondaryValues:
        p = np.asarray(values["pressure"], dtype=np.float64)
        nph = self.number_of_phases
        n = p.shape[0]
        if "saturations" in values:
            S = np.asarray(values["saturations"], dtype=np.float64)
        else:
            S = np.ones((1, n))

        rho = self.densities(p, nph)
        mu = parameters.get("phase_viscosities")
        if mu is None:
            mu = self.viscosities(p, nph)
        kr = self.relative_permeabilities(S)
        if self.capillary_pressure is not None and nph > 1:
            pc = self.capillary_pressure(S)
        else:
            pc = np.zeros((nph, n))
        X = np.broadcast_to(np.eye(nph)[:, :, None], (nph, nph, n))
        return {
            "pressure": p,
            "saturations": S,
            "phase_mass_densities": rho,
            "phase_amount_densities": rho,
            "component_phase_fractions": X,
            "phase_viscosities": mu,
            "relative_permeabilities": kr,
            "mobilities": kr / mu,
            "capillary_pressures": pc,
            "phase_pressures": p[None, :] + pc,
            "component_concentrations": rho * S,
            "total_amount_density": (rho * S).sum(axis=0),
        }

    def _injection_amounts(
        self, fractions: FloatArray, kind: str, secondary: SecondaryValues, cell: int
    ) -> FloatArray:
        if kind == "volume":
            return fractions * secondary["phase_mass_densities"][:, cell]
        return fractions

    def _boundary_inflow_amounts(
        self, fractions: FloatArray, secondary: SecondaryValues, cell: int
    ) -> FloatArray:
        return fractions * secondary["phase_mass_densities"][:, cell]

    def reference_amount_densities(self, secondary: SecondaryValues) -> FloatArray:
        return secondary["phase_mass_densities"].mean(axis=1)

    def surface_volume_rates(
        self,
        amount_rates: FloatArray,
        reference_densities: typing.Optional[FloatArray],
    ) -> typing.Dict[Phase, float]:
        if reference_densities is None:
            reference_densities = self.reference_densities
        return {
            phase: float(amount_rates[index] / reference_densities[index])
            for index, phase in enumerate(self.phases)
        }

    def outputs(
        self,
        values: StateValues,
        secondary: SecondaryValues,
        volumes: typing.Optional[FloatArray] = None,
    ) -> StateValues:
        outputs = super().outputs(values, secondary, volumes)
        outputs["phase_mass_densities"] = secondary["phase_mass_densities"].copy()
        return outputs

    def __repr__(self) -> str:
        return f"{type(self).__name__}(phases={[phase.value for phase in self.phases]})"
