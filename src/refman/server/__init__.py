"""Background server: portfile, liveness probing, detection, lifecycle and the HTTP app."""
