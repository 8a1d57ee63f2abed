# Copyright 2025 Allard Peper (Dragon Ace / DragonAceNL)
# Licensed under the Apache License, Version 2.0 (see LICENSE).

"""meshgrade - Adaptive mesh grading for HRTF simulation meshes."""

__version__ = "0.1.0"
