#!/usr/bin/env python3
"""
Power Sequencer: ordered shutdown and startup of a vSphere cluster

Convenience launcher for running from a checkout, equivalent to the
power-sequencer console script.
"""

import sys

from power_sequencer.main import main

if __name__ == "__main__":
    sys.exit(main())
