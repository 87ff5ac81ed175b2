"""Runtime core: actors, events, commands and the update loop."""
