"""DDI Miner: drug-drug interaction evidence mining and reconciliation."""

__version__ = "0.1.0"
