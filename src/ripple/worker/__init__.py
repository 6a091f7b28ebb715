"""Fan-out worker: bus consumer → relevance gate → store → delivery bridge."""
