"""runbox: run allowlisted local scripts over HTTP and keep an audit log of every run."""

__version__ = "0.1.0"
