"""tedge container manager (tcm).

Single-host agent that manages containers as thin-edge.io software packages:
 - container and compose-group install/remove/list plugins
 - live in-place container replacement (including updating itself)
 - an event-driven loop that keeps the cloud twin in sync with the engine

Every component takes its collaborators and settings explicitly, there is no
process-wide state.
"""

__version__ = "0.1.0"
