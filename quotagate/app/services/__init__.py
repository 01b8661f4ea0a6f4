"""Services package for the admission engine."""
