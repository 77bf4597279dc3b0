#!/usr/bin/env python3
"""Script runner"""
import sys

from zipbackup.cli import main

if __name__ == '__main__':
    sys.exit(main())
