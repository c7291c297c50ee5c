"""Scalar diffusion systems: transient heat conduction and a steady Poisson problem."""

import typing

import attrs
import numpy as np

from poreflow.discretization.tpfa import compute_boundary_trans, compute_face_trans
from poreflow.systems.base import SecondaryValues, System
from poreflow.systems.variables import PrimaryVariable, ScalarVariable
from poreflow.types import FloatArray, IntArray, StateValues

if typing.TYPE_CHECKING:
    from poreflow.config import Config
    from poreflow.discretization.domain import DiscretizedDomain
    from poreflow.forces import FlowBoundaryCondition, SourceTerm

__all__ = ["HeatSystem", "PoissonSystem"]


@attrs.frozen(eq=False)
class _ScalarDiffusionSystem(System):
    """Single scalar unknown diffusing with two-point face transmissibilities."""

    variable: typing.ClassVar[str] = ""

    conductivity: typing.Any = 1.0
    """Conductivity (scalar, per cell or per cell diagonal) used for the default transmissibilities."""

    @property
    def primary_variables(self) -> typing.Tuple[PrimaryVariable, ...]:
        return (ScalarVariable(self.variable),)

    @property
    def equation_names(self) -> typing.Tuple[str, ...]:
        return (self.variable,)

    def default_parameters(self, domain: "DiscretizedDomain") -> StateValues:
        return {"transmissibilities": compute_face_trans(domain.mesh, self.conductivity)}

    def boundary_transmissibilities(self, domain: "DiscretizedDomain") -> FloatArray:
        return compute_boundary_trans(domain.mesh, self.conductivity)

    def secondary(
        self,
        values: StateValues,
        parameters: StateValues,
        cache: typing.Optional[SecondaryValues] = None,
    ) -> SecondaryValues:
        return {self.variable: np.asarray(values[self.variable], dtype=np.float64)}

    def storage_volumes(self, domain: "DiscretizedDomain", values: StateValues) -> FloatArray:
        return domain.mesh.cell_volumes

    def accumulation(
        self, values: StateValues, secondary: SecondaryValues, volumes: FloatArray
    ) -> FloatArray:
        if self.steady:
            return np.zeros((1, volumes.shape[0]))
        return (secondary[self.variable] * volumes)[None, :]

    def face_fluxes(
        self,
        left: IntArray,
        right: IntArray,
        trans: FloatArray,
        depth_differences: FloatArray,
        values: StateValues,
        secondary: SecondaryValues,
    ) -> FloatArray:
        u = secondary[self.variable]
        return (trans * (u[left] - u[right]))[None, :]

    def source_rates(
        self, source: "SourceTerm", values: StateValues, secondary: SecondaryValues
    ) -> FloatArray:
        return np.array([source.value])

    def boundary_rates(
        self,
        bc: "FlowBoundaryCondition",
        trans: float,
        values: StateValues,
        secondary: SecondaryValues,
    ) -> FloatArray:
        return np.array([trans * (bc.pressure - secondary[self.variable][bc.cell])])

    def convergence(
        self,
        residual: FloatArray,
        volumes: FloatArray,
        secondary: SecondaryValues,
        config: "Config",
    ) -> typing.Tuple[bool, typing.Dict[str, float]]:
        error = float((np.abs(residual) / volumes[None, :]).max()) if residual.size else 0.0
        return error <= config.tol_generic, {self.variable: error}

    def outputs(
        self,
        values: StateValues,
        secondary: SecondaryValues,
        volumes: typing.Optional[FloatArray] = None,
    ) -> StateValues:
        return {}


@attrs.frozen(eq=False)
class HeatSystem(_ScalarDiffusionSystem):
    """
    Transient heat conduction with unit heat capacity.

    `V dT/dt - div(k grad T) = q`
    """

    variable: typing.ClassVar[str] = "temperature"


@attrs.frozen(eq=False)
class PoissonSystem(_ScalarDiffusionSystem):
    """
    Steady variable coefficient Poisson equation `-div(K grad U) = f`.

    Without boundary conditions the solution is determined up to a constant,
    which is fixed by holding the first cell at its initial value.
    """

    variable: typing.ClassVar[str] = "potential"
    steady: typing.ClassVar[bool] = True
