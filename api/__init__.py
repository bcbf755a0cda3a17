"""Administrative HTTP surface, configuration, logging and persistence."""
