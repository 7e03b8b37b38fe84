"""Connection routing and message fan-out."""
