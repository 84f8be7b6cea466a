"""On-page analytics drill-down engine."""
