"""HTTP control surface of debugforce."""
