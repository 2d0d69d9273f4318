"""SciProto backend: research paper to interactive prototype agent."""

__version__ = "1.0.0"
