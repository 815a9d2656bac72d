#!/usr/bin/env python3
"""
CLI entry point for retinal reference frame construction.

Usage:
    python run_reference.py input.avi input_trace.npz
    python run_reference.py input.avi input_trace.npz --subpixel 2 --strip-height 15
    python run_reference.py input.avi input_trace.npz --stabilized-video --overwrite
"""

from retina_reference.pipeline import main

if __name__ == "__main__":
    raise SystemExit(main())
