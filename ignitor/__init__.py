"""
ignitor - Declarative contract deployment orchestrator

Builds dependency graphs of contract deploys and calls, executes them
against a network, and journals every step so interrupted runs resume
without duplicating on-chain effects.
"""

__version__ = "0.1.0"


__all__ = ["IgnitorConfig", "load_config", "get_ignitor_home", "build_module", "run_deployment"]

from .config import IgnitorConfig, load_config, get_ignitor_home
from .builder import build_module
from .deployer import run_deployment
