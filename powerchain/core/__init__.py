"""Orchestration core: dependency graph, cascade engine, inactivity monitor."""
