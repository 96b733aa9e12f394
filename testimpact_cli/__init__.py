"""testimpact-cli: targeted test selection and CI diagnostics for pull requests."""

__version__ = "0.3.0"
