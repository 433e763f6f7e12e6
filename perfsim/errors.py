"""Exceptions raised at the HTTP boundary.

Core operations report "unknown or already finished" by returning ``None``;
only the adapter turns that into an exception (and then a 404).
"""


class PerfsimError(Exception):
    """Base class for Perfsim errors."""


class SimulationNotFoundError(PerfsimError):
    def __init__(self, simulation_id: str) -> None:
        super().__init__(f"Simulation {simulation_id} not found")
        self.simulation_id = simulation_id
