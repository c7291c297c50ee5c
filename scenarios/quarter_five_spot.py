"""Waterflood of a layered quarter five-spot with a rate injector and a BHP producer."""

import logging
from pathlib import Path

import poreflow

logging.basicConfig(level=logging.INFO)

OUTPUT = Path.cwd() / "scenarios/states/quarter_five_spot.h5"


def main():
    mesh = poreflow.CartesianMesh((15, 15, 3), extent=(300.0, 300.0, 30.0))
    permeability = 0.2 * poreflow.c.DARCY
    injector = poreflow.setup_vertical_well(mesh, permeability, 0, 0, "I-1")
    producer = poreflow.setup_vertical_well(mesh, permeability, 14, 14, "P-1")
    system = poreflow.ImmiscibleSystem(
        (poreflow.Phase.AQUEOUS, poreflow.Phase.LIQUID),
        relative_permeabilities=poreflow.BrooksCoreyRelPerm(
            2, exponents=[2.0, 3.0], residuals=[0.15, 0.2]
        ),
        densities=poreflow.ConstantCompressibilityDensities(
            reference_densities=[1020.0, 850.0], compressibilities=[4e-10, 1e-9]
        ),
        viscosities=poreflow.ConstantViscosities([0.5e-3, 3e-3]),
    )
    model, parameters = poreflow.setup_reservoir_model(
        mesh,
        system,
        wells=[injector, producer],
        porosity=0.25,
        permeability=permeability,
    )
    state0 = model.setup_state(pressure=2e7, saturations=[0.15, 0.85])
    forces = poreflow.setup_reservoir_forces(
        model,
        control={
            "I-1": poreflow.InjectorControl(
                poreflow.TotalRateTarget(200.0 / poreflow.c.DAY),
                mix=[1.0, 0.0],
                density=1020.0,
                limits={"bhp": 3.5e7},
            ),
            "P-1": poreflow.ProducerControl(
                poreflow.BottomHolePressureTarget(1.5e7),
                limits={"lrat": -400.0 / poreflow.c.DAY},
            ),
        },
    )
    simulator, config = poreflow.setup_reservoir_simulator(
        model, state0, parameters, max_timestep=poreflow.Time(days=15)
    )
    timesteps = [poreflow.Time(days=30)] * 24

    store = poreflow.new_store("hdf5", OUTPUT)
    states = []
    for state in simulator.run(timesteps, forces=forces, config=config):
        store.dump([state])
        states.append(state)

    outputs = poreflow.full_well_outputs(model, states, forces)
    times = poreflow.report_times(simulator.reports) / poreflow.c.DAY
    for day, oil, water in zip(times, outputs["P-1"]["oil_rate"], outputs["P-1"]["water_rate"]):
        print(f"day {day:6.0f}: oil {-oil * poreflow.c.DAY:8.2f} m³/d, water {-water * poreflow.c.DAY:8.2f} m³/d")


if __name__ == "__main__":
    main()
