"""UnchartedTravel community API: profiles, XP levels and trip groups."""
