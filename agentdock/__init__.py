"""
agentdock: session runner orchestration for interactive agent processes.

Subpackages:
- core: launcher, line protocol, control correlator, runner state machine
- services: runner manager, event fan-out, session records
- db: SQLAlchemy models and engine factory
"""
__version__ = "0.1.0"
