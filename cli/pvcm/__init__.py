"""pvc-migrate: automation controller PVC migration between clusters."""

__version__ = '1.0.0'
