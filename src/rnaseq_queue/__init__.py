"""Admission-controlled RNA-seq sample scheduler."""

__version__ = "0.1.0"
