"""Domain models, hierarchy snapshots, errors and wire schemas."""
