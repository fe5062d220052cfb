"""Mirror of NYC DOB building permits served as date-filtered vector tiles."""
