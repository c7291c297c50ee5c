"""Water displacing oil along a horizontal core: the Buckley-Leverett problem."""

import logging

import numpy as np

import poreflow

logging.basicConfig(level=logging.INFO)


def main():
    cells = 100
    domain = poreflow.get_1d_reservoir(
        cells, length=100.0, permeability=poreflow.c.DARCY, porosity=0.2
    )
    system = poreflow.ImmiscibleSystem(
        (poreflow.Phase.AQUEOUS, poreflow.Phase.LIQUID),
        relative_permeabilities=poreflow.BrooksCoreyRelPerm(
            2, exponents=2.0, residuals=[0.2, 0.2]
        ),
        densities=poreflow.ConstantCompressibilityDensities(
            reference_densities=[1000.0, 800.0], compressibilities=[1e-9, 1e-9]
        ),
        viscosities=poreflow.ConstantViscosities([1e-3, 5e-3]),
    )
    model, parameters = poreflow.setup_reservoir_model(domain, system)
    state0 = model.setup_state(pressure=1e7, saturations=[0.2, 0.8])

    # One pore volume of water over the whole run, produced at the same reservoir volume rate
    duration = poreflow.Time(days=500)
    rate = float(domain.pore_volumes.sum()) / duration
    forces = poreflow.setup_forces(
        model,
        sources=[
            poreflow.SourceTerm(0, rate, fractional_flow=[1.0, 0.0], kind="volume"),
            poreflow.SourceTerm(cells - 1, -rate, kind="volume"),
        ],
    )
    result = poreflow.simulate(
        state0,
        model,
        [poreflow.Time(days=10)] * 50,
        forces=forces,
        parameters=parameters,
        max_timestep=poreflow.Time(days=5),
    )
    water = result.states[-1]["Reservoir"]["saturations"][0]
    front = int(np.argmax(water < 0.25))
    print(f"Water front near cell {front} of {cells}")
    print(f"Newton iterations: {sum(r.newton_iterations for r in result.reports)}")


if __name__ == "__main__":
    main()
