"""Heat conduction in a plate and a steady Poisson problem with variable conductivity."""

import logging

import numpy as np

import poreflow

logging.basicConfig(level=logging.INFO)


def main():
    mesh = poreflow.CartesianMesh((30, 30), extent=(3.0, 3.0))
    domain = poreflow.discretized_domain(mesh)

    heat = poreflow.SimulationModel(domain, poreflow.HeatSystem(conductivity=1e-2))
    temperature = np.full(mesh.number_of_cells, 300.0)
    temperature[mesh.cell_index(15, 15)] = 1000.0
    result = poreflow.simulate(
        heat.setup_state(temperature=temperature), heat, [10.0] * 20
    )
    print("Peak temperature:", [round(float(s["temperature"].max()), 2) for s in result.states])

    x = mesh.cell_centroids[:, 0]
    conductivity = 1.0 + 9.0 * (x > 1.5)
    poisson = poreflow.SimulationModel(domain, poreflow.PoissonSystem(conductivity=conductivity))
    forces = poreflow.setup_forces(
        poisson,
        sources=[
            poreflow.PoissonSource(mesh.cell_index(0, 15), 1.0),
            poreflow.PoissonSource(mesh.cell_index(29, 15), -1.0),
        ],
    )
    steady = poreflow.simulate(
        poisson.setup_state(potential=0.0), poisson, [1.0], forces=forces
    )
    potential = steady.states[0]["potential"].reshape(30, 30)
    print("Potential along the middle row:", potential[15].round(3))


if __name__ == "__main__":
    main()
