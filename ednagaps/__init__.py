"""
ednagaps - eDNA reference database gap analysis

Builds WoRMS accepted species lists for genetic reference databases and
estimates within-genus sequence identity from cached blastn alignments.
"""

__version__ = "1.0.0"
