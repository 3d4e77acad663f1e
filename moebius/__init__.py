"""
moebius - Generic relay dispatch and result correlation

Forwards opaque calls through the Moebius relay contract and recovers
their results from the relay's MoebiusData correlation records.
Keepers refresh targets on a fixed schedule.
"""

__version__ = "0.1.0"


__all__ = ["MoebiusConfig", "load_config", "get_moebius_home", "Relay", "ResultCorrelator", "Keeper"]

from .config import MoebiusConfig, load_config, get_moebius_home
from .correlator import ResultCorrelator
from .keeper import Keeper
from .relay import Relay
