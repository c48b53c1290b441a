"""Framework core: tool contract, events, settings, value objects and errors."""
