"""Threshold evaluation and alert delivery."""
