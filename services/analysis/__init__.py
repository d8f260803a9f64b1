"""Photo analysis pipeline: queue, dispatcher, validator, ledger and poll views."""
