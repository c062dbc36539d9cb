"""Services: chain access, durable store, tracking, monitoring, execution."""
