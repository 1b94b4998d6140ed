"""Disk provisioning pipeline: classify, assign slots, converge, report."""
