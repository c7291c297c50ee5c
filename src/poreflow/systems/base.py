import abc
import typing

import numpy as np

from poreflow.constants import c
from poreflow.errors import ValidationError
from poreflow.systems.variables import PrimaryVariable
from poreflow.types import FloatArray, IntArray, Phase, StateValues
from poreflow.utils import as_cell_array, as_row_array

if typing.TYPE_CHECKING:
    from poreflow.config import Config
    from poreflow.discretization.domain import DiscretizedDomain
    from poreflow.forces import FlowBoundaryCondition, SourceTerm

__all__ = ["System", "FlowSystem", "SecondaryValues"]

SecondaryValues = typing.Dict[str, typing.Any]
"""Mapping from secondary variable name to per-entity values."""


class System(abc.ABC):
    """
    Equations and variables of a physical system on a set of entities.

    A system knows which primary variables it solves for, how to derive
    secondary variables from them, and how to evaluate the accumulation,
    flux and source terms of its conservation equations.
    """

    steady: bool = False
    """Whether the system has no accumulation term."""

    @property
    @abc.abstractmethod
    def primary_variables(self) -> typing.Tuple[PrimaryVariable, ...]:
        """Primary variables in unknown order."""
        ...

    @property
    def number_of_unknowns(self) -> int:
        """Number of primary unknowns (and equations) per entity."""
        return sum(variable.count for variable in self.primary_variables)

    @property
    def number_of_equations(self) -> int:
        return self.number_of_unknowns

    @property
    @abc.abstractmethod
    def equation_names(self) -> typing.Tuple[str, ...]: ...

    def default_parameters(self, domain: "DiscretizedDomain") -> StateValues:
        """Parameters used unless overridden, for the cells of `domain`."""
        return {"transmissibilities": domain.transmissibilities.copy()}

    def boundary_transmissibilities(self, domain: "DiscretizedDomain") -> FloatArray:
        """Half transmissibilities of the boundary faces of `domain`."""
        return domain.boundary_transmissibilities

    def initial_values(self, n: int, **values: typing.Any) -> StateValues:
        """
        Build validated initial values for `n` entities.

        :param n: Number of entities.
        :param values: Values per primary variable name; scalars and per-row
            vectors are broadcast over the entities.
        :raises ValidationError: If a variable is missing, unknown or malformed.
        """
        known = {variable.name: variable for variable in self.primary_variables}
        unknown = set(values) - set(known)
        if unknown:
            raise ValidationError(
                f"Unknown state variable(s) {sorted(unknown)} for {type(self).__name__}, "
                f"expected {sorted(known)}"
            )
        state: StateValues = {}
        for name, variable in known.items():
            if name not in values:
                raise ValidationError(f"Missing initial value for '{name}'")
            shape = variable.value_shape(n)
            if len(shape) == 1:
                state[name] = as_cell_array(values[name], n, name, dtype=np.float64)
            else:
                state[name] = as_row_array(values[name], shape[0], n, name, dtype=np.float64)
        self.validate_values(state, n)
        return state

    def validate_values(self, values: StateValues, n: int) -> None:
        """Check that `values` holds every primary variable with its declared shape."""
        for variable in self.primary_variables:
            if variable.name not in values:
                raise ValidationError(f"State is missing '{variable.name}'")
            shape = variable.value_shape(n)
            if np.shape(values[variable.name]) != shape:
                raise ValidationError(
                    f"State variable '{variable.name}' must have shape {shape}, "
                    f"got {np.shape(values[variable.name])}"
                )

    @abc.abstractmethod
    def secondary(
        self,
        values: StateValues,
        parameters: StateValues,
        cache: typing.Optional[SecondaryValues] = None,
    ) -> SecondaryValues:
        """Derive secondary variables for all entities."""
        ...

    @abc.abstractmethod
    def storage_volumes(self, domain: "DiscretizedDomain", values: StateValues) -> FloatArray:
        """Volumes multiplying the accumulation densities of the cells of `domain`."""
        ...

    @abc.abstractmethod
    def accumulation(
        self, values: StateValues, secondary: SecondaryValues, volumes: FloatArray
    ) -> FloatArray:
        """Conserved amounts per entity, shape (neq, n)."""
        ...

    @abc.abstractmethod
    def face_fluxes(
        self,
        left: IntArray,
        right: IntArray,
        trans: FloatArray,
        depth_differences: FloatArray,
        values: StateValues,
        secondary: SecondaryValues,
    ) -> FloatArray:
        """Rates (amount per second) flowing from `left` to `right`, shape (neq, nf)."""
        ...

    @abc.abstractmethod
    def source_rates(
        self, source: "SourceTerm", values: StateValues, secondary: SecondaryValues
    ) -> FloatArray:
        """Rates entering the source cell, shape (neq,)."""
        ...

    @abc.abstractmethod
    def boundary_rates(
        self,
        bc: "FlowBoundaryCondition",
        trans: float,
        values: StateValues,
        secondary: SecondaryValues,
    ) -> FloatArray:
        """Rates entering the cell through a boundary condition, shape (neq,)."""
        ...

    @abc.abstractmethod
    def convergence(
        self,
        residual: FloatArray,
        volumes: FloatArray,
        secondary: SecondaryValues,
        config: "Config",
    ) -> typing.Tuple[bool, typing.Dict[str, float]]:
        """Check a residual of shape (neq, n) for convergence."""
        ...

    def outputs(
        self,
        values: StateValues,
        secondary: SecondaryValues,
        volumes: typing.Optional[FloatArray] = None,
    ) -> StateValues:
        """Secondary values stored alongside the primary values in output states."""
        return {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class FlowSystem(System):
    """
    Multiphase flow in porous media with one conservation equation per component.

    Subclasses provide the secondary variables; fluxes, accumulation,
    sources and convergence checks are shared.
    """

    phases: typing.Tuple[Phase, ...]

    @property
    def number_of_phases(self) -> int:
        return len(self.phases)

    @property
    @abc.abstractmethod
    def number_of_components(self) -> int: ...

    @property
    @abc.abstractmethod
    def component_molar_masses(self) -> FloatArray:
        """Mass per conserved amount for each component (ones for mass based systems)."""
        ...

    def default_parameters(self, domain: "DiscretizedDomain") -> StateValues:
        parameters = super().default_parameters(domain)
        parameters["temperature"] = np.full(
            domain.number_of_cells, float(c.DEFAULT_TEMPERATURE)
        )
        return parameters

    def storage_volumes(self, domain: "DiscretizedDomain", values: StateValues) -> FloatArray:
        return np.asarray(domain.pore_volume(values["pressure"]))

    def accumulation(
        self, values: StateValues, secondary: SecondaryValues, volumes: FloatArray
    ) -> FloatArray:
        return secondary["component_concentrations"] * volumes[None, :]

    def face_fluxes(
        self,
        left: IntArray,
        right: IntArray,
        trans: FloatArray,
        depth_differences: FloatArray,
        values: StateValues,
        secondary: SecondaryValues,
    ) -> FloatArray:
        """
        Phase potential upwinded component fluxes.

        For each phase, `dpsi = p_l - p_r + rho_face * g * (z_r - z_l)` with the
        face density weighted by saturation. The upstream cell supplies the
        mobility, amount density and phase composition.
        """
        g = float(c.ACCELERATION_DUE_TO_GRAVITY)
        phase_pressures = secondary["phase_pressures"]
        rho = secondary["phase_mass_densities"]
        S = secondary["saturations"]
        xi = secondary["phase_amount_densities"]
        X = secondary["component_phase_fractions"]
        mob = secondary["mobilities"]

        fluxes = np.zeros((self.number_of_components, left.shape[0]))
        for ph in range(self.number_of_phases):
            s_l = S[ph, left]
            s_r = S[ph, right]
            total = s_l + s_r
            rho_face = np.where(
                total > 1e-12,
                (s_l * rho[ph, left] + s_r * rho[ph, right]) / np.maximum(total, 1e-12),
                0.5 * (rho[ph, left] + rho[ph, right]),
            )
            dpsi = (
                phase_pressures[ph, left]
                - phase_pressures[ph, right]
                + rho_face * g * depth_differences
            )
            upstream = np.where(dpsi >= 0.0, left, right)
            phase_rate = trans * mob[ph, upstream] * dpsi
            fluxes += X[:, ph, upstream] * (xi[ph, upstream] * phase_rate)[None, :]
        return fluxes

    def flowing_amounts(self, secondary: SecondaryValues, index: typing.Any) -> FloatArray:
        """Component amounts carried per unit of total volumetric flow, at entity `index`."""
        mob = secondary["mobilities"][:, index]
        total = mob.sum(axis=0)
        amounts = np.einsum(
            "cp...,p...->c...",
            secondary["component_phase_fractions"][:, :, index],
            secondary["phase_amount_densities"][:, index] * mob,
        )
        if np.ndim(total) == 0:
            if total <= 0.0:
                return secondary["component_concentrations"][:, index]
            return amounts / total
        fallback = secondary["component_concentrations"][:, index]
        return np.where(total[None] > 0.0, amounts / np.maximum(total, 1e-300)[None], fallback)

    def _injection_amounts(
        self, fractions: FloatArray, kind: str, secondary: SecondaryValues, cell: int
    ) -> FloatArray:
        """Amount per unit of source value for an injected stream with `fractions`."""
        raise NotImplementedError

    def source_rates(
        self, source: "SourceTerm", values: StateValues, secondary: SecondaryValues
    ) -> FloatArray:
        cell = source.cell
        if source.value >= 0.0:
            fractions = source.fractional_flow
            if fractions is None:
                # Inject the resident fluid
                concentrations = secondary["component_concentrations"][:, cell]
                if source.kind == "mass":
                    mass = concentrations * self.component_molar_masses
                    return source.value * concentrations / mass.sum()
                return source.value * concentrations
            return source.value * self._injection_amounts(
                np.asarray(fractions, dtype=np.float64), source.kind, secondary, cell
            )

        flowing = self.flowing_amounts(secondary, cell)
        if source.kind == "mass":
            mass = flowing * self.component_molar_masses
            return source.value * flowing / mass.sum()
        # Volumetric production at reservoir conditions
        return source.value * flowing

    def boundary_rates(
        self,
        bc: "FlowBoundaryCondition",
        trans: float,
        values: StateValues,
        secondary: SecondaryValues,
    ) -> FloatArray:
        cell = bc.cell
        dp = bc.pressure - values["pressure"][cell]
        mob = secondary["mobilities"][:, cell]
        if dp > 0.0:
            total_mobility = mob.sum()
            if bc.fractional_flow is None:
                amounts = secondary["component_concentrations"][:, cell]
            else:
                amounts = self._boundary_inflow_amounts(
                    np.asarray(bc.fractional_flow, dtype=np.float64), secondary, cell
                )
            return trans * total_mobility * dp * amounts
        return trans * dp * self.flowing_amounts(secondary, cell) * mob.sum()

    def _boundary_inflow_amounts(
        self, fractions: FloatArray, secondary: SecondaryValues, cell: int
    ) -> FloatArray:
        raise NotImplementedError

    def reference_amount_densities(self, secondary: SecondaryValues) -> FloatArray:
        """Typical amount density of each conserved component, for residual scaling."""
        raise NotImplementedError

    def convergence(
        self,
        residual: FloatArray,
        volumes: FloatArray,
        secondary: SecondaryValues,
        config: "Config",
    ) -> typing.Tuple[bool, typing.Dict[str, float]]:
        """
        CNV (max cell residual over pore volume times density) and MB
        (summed residual over total pore volume times density) per component.
        """
        scale = self.reference_amount_densities(secondary)
        cnv = (np.abs(residual) / (volumes[None, :] * scale[:, None])).max(axis=1)
        mb = np.abs(residual.sum(axis=1)) / (volumes.sum() * scale)
        converged = bool(np.all(cnv <= config.tol_cnv) and np.all(mb <= config.tol_mb))
        return converged, {"cnv": float(cnv.max()), "mb": float(mb.max())}

    @abc.abstractmethod
    def surface_volume_rates(
        self,
        amount_rates: FloatArray,
        reference_densities: typing.Optional[FloatArray],
    ) -> typing.Dict[Phase, float]:
        """
        Convert component amount rates to surface volume rates per phase.

        :param amount_rates: Component rates in conserved units per second (signed).
        :param reference_densities: Surface density per phase (mass based systems).
        :return: Signed surface volume rate per phase (m³/s).
        """
        ...

    def outputs(
        self,
        values: StateValues,
        secondary: SecondaryValues,
        volumes: typing.Optional[FloatArray] = None,
    ) -> StateValues:
        """
        Component amounts per entity (`total_masses`), or concentrations per
        unit pore volume when `volumes` is not given.
        """
        concentrations = secondary["component_concentrations"]
        if volumes is None:
            return {"total_masses": concentrations.copy()}
        return {"total_masses": concentrations * volumes[None, :]}
