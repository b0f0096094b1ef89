"""Account trust lifecycle service for the recycling catalog."""
