"""Figures for the DLNM results."""
