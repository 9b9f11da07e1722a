"""Runtime managers: coordinator, gate, health, restarts, volumes, networks."""
