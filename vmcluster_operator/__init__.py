"""VMCluster operator: reconciles VictoriaMetrics cluster resources into workloads."""

__version__ = "0.1.0"
