"""Infrastructure layer: configuration, logging, encryption and audit."""
