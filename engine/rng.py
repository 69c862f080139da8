from typing import Optional
import numpy as np

class DRNG:
    """Seedable random number generator wrapper.

    A fixed seed makes scouting reproducible under test; ``None`` pulls fresh
    OS entropy for production.
    """

    def __init__(self, seed: Optional[int] = None):
        self.g = np.random.Generator(np.random.PCG64(seed))

    def random(self) -> float:
        """Return a uniform draw in [0, 1)."""
        return float(self.g.random())
