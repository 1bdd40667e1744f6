"""
Manufacturing Orchestrator

Queue-based build and disassembly processing against Fishbowl.
"""

__version__ = "1.0.0"
