#!/usr/bin/env python3
"""
Simple launcher script for the flash loan arbitrage bot.

Usage:
    python run.py <command> [options]
    python run.py --help
"""
from flash_arb.main import run

if __name__ == '__main__':
    run()
