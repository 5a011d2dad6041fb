"""Instance status server and Prometheus metrics."""
