#!/usr/bin/env python3
"""Run one backup from a source checkout"""
import sys

from pvebackup.cli import main

if __name__ == '__main__':
    # Same entry point as the installed `pvebackup` command
    sys.exit(main(sys.argv[1:] or ['run']))
