"""VoterSpheres candidate directory core."""

__version__ = "0.3.0"
