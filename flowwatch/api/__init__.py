"""HTTP ingress for the supervisor queue."""
