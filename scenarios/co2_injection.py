"""CO2 injection into a vertical cross-section of a methane/decane reservoir."""

import logging

import numpy as np

import poreflow

logging.basicConfig(level=logging.INFO)

CO2 = poreflow.MolecularProperty(
    molar_mass=0.04401,
    critical_pressure=7.3773e6,
    critical_temperature=304.13,
    critical_volume=9.4e-5,
    acentric_factor=0.225,
)
METHANE = poreflow.MolecularProperty(
    molar_mass=0.016043,
    critical_pressure=4.599e6,
    critical_temperature=190.56,
    critical_volume=9.86e-5,
    acentric_factor=0.011,
)
DECANE = poreflow.MolecularProperty(
    molar_mass=0.142285,
    critical_pressure=2.103e6,
    critical_temperature=617.7,
    critical_volume=6.0e-4,
    acentric_factor=0.4884,
)


def main():
    mixture = poreflow.MultiComponentMixture(
        {"CO2": CO2, "C1": METHANE, "C10": DECANE},
        binary_interaction=np.array(
            [[0.0, 0.1, 0.1], [0.1, 0.0, 0.04], [0.1, 0.04, 0.0]]
        ),
    )
    system = poreflow.CompositionalSystem(poreflow.GenericCubicEOS(mixture))
    mesh = poreflow.CartesianMesh((20, 1, 5), extent=(400.0, 20.0, 25.0), origin=(0.0, 0.0, 1500.0))
    model, parameters = poreflow.setup_reservoir_model(
        mesh,
        system,
        porosity=0.2,
        permeability=np.outer([0.1, 0.1, 0.01], np.ones(mesh.number_of_cells)) * poreflow.c.DARCY,
        temperature=360.0,
    )
    state0 = model.setup_state(
        pressure=1.5e7, overall_mole_fractions=[0.01, 0.39, 0.6]
    )
    injector = mesh.cell_index(0, 0, 4)
    forces = poreflow.setup_forces(
        model,
        sources=poreflow.SourceTerm(injector, 0.05, fractional_flow=[1.0, 0.0, 0.0]),
        bc=[
            poreflow.FlowBoundaryCondition(mesh.cell_index(19, 0, k), 1.5e7)
            for k in range(5)
        ],
    )
    result = poreflow.simulate(
        state0,
        model,
        [poreflow.Time(days=30)] * 12,
        forces=forces,
        parameters=parameters,
        max_timestep=poreflow.Time(days=10),
    )
    final = result.states[-1]["Reservoir"]
    co2 = final["overall_mole_fractions"][0].reshape(5, 20)
    print("Overall CO2 fraction by layer:")
    print(co2.round(2))


if __name__ == "__main__":
    main()
