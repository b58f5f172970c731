"""QueryTorque DAX Performance command-line interface."""
