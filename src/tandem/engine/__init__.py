"""Turn engine: controller, stream consumer, dispatcher, undo ledger, watchdog."""
