"""HTTP client for the control plane and storage service."""
