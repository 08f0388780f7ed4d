"""Infrastructure: settings, logging, errors and the two storage tiers."""
