"""Administrative tools for the save & restore engine."""
