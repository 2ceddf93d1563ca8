"""Population-wide and district-specific DLNM fitting and prediction."""
