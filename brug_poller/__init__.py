"""Poll NDW bridge openings, derive bridge status and log transitions."""
