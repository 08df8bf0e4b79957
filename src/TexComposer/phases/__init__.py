"""Processing phases: composition, alpha extraction and DDS encoding."""
