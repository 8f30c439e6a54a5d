#!/usr/bin/env python3
"""
DropPilot - Main entry point

A simple launcher that runs the droppilot package as a module.
"""

if __name__ == "__main__":
    import runpy

    runpy.run_module("droppilot", run_name="__main__")
