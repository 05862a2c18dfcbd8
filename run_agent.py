#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
RVM Agent Launcher

Usage:
    python run_agent.py --config config.yaml
"""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), 'src'))

from rvm_agent.agent import main  # noqa: E402

if __name__ == '__main__':
    sys.exit(main())
