"""adworker — queue-driven worker that turns a product photo into a video ad."""
