"""Sandbox orchestrator.

This package contains:
- The single-slot session store and file registry
- The provisioning sequence for a Vite + React workspace
- Apply-code / install-packages / run-command operations on the active sandbox
"""
