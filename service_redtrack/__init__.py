"""RedTrack reporting service for the VMetrics Access Layer."""
