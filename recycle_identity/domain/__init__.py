"""Domain model and workflows for the account trust lifecycle."""
