"""Orchestration control loop.

This package holds the pieces that move Tasks through their lifecycle.

Key Components:
    - capture: Parse result artifacts into outputs and results
    - dependencies: Derive readiness from upstream Task phases
    - branch_mutex: Derive whether a Task may take its branch
    - job_builder: Turn a Task into an executor start request
    - TaskController: The Task state machine
    - TaskSpawnerController: Discovery-driven Task creation
    - ControllerManager: Work queue, watch fan-out and timers
"""
