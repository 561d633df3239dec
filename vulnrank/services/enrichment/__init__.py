from .epss import EPSSProvider
from .ghsa import GHSAProvider
from .kev import KEVProvider
from .nvd import NVDProvider, nvd_rate_limiter

# Process-wide instance; its catalog cache is reused by every scan
kev_provider = KEVProvider()

__all__ = [
    "EPSSProvider",
    "GHSAProvider",
    "KEVProvider",
    "NVDProvider",
    "kev_provider",
    "nvd_rate_limiter",
]
