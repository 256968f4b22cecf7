"""Core services of the control plane."""
