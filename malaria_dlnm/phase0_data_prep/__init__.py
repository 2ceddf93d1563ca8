"""Data loading, cleaning and feature engineering for the district-month panel."""
