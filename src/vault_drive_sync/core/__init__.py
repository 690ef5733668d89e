"""Infrastructure shared by the sync layer: async bridge and remote store."""
