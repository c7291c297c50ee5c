"""Water above oil in a closed vertical column segregates under gravity."""

import logging

import numpy as np

import poreflow

logging.basicConfig(level=logging.INFO)


def main():
    cells = 40
    domain = poreflow.get_1d_reservoir(
        cells, z_max=100.0, permeability=0.5 * poreflow.c.DARCY, porosity=0.25
    )
    system = poreflow.ImmiscibleSystem(
        (poreflow.Phase.AQUEOUS, poreflow.Phase.LIQUID),
        relative_permeabilities=poreflow.BrooksCoreyRelPerm(2, exponents=2.0),
        densities=poreflow.ConstantCompressibilityDensities(
            reference_densities=[1000.0, 700.0], compressibilities=[1e-9, 1e-9]
        ),
        viscosities=poreflow.ConstantViscosities([1e-3, 2e-3]),
    )
    model, parameters = poreflow.setup_reservoir_model(domain, system)
    water = np.where(np.arange(cells) < cells // 2, 1.0, 0.0)
    state0 = model.setup_state(pressure=1e7, saturations=[water, 1.0 - water])

    result = poreflow.simulate(
        state0,
        model,
        [poreflow.Time(days=50)] * 20,
        parameters=parameters,
        max_timestep=poreflow.Time(days=10),
    )
    final = result.states[-1]["Reservoir"]["saturations"][0]
    print("Water saturation from top to bottom:", final.round(2))


if __name__ == "__main__":
    main()
