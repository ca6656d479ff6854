"""Practice listening tracker: listening-session recorder and progress ledger."""
