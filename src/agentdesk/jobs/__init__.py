"""Job lifecycle models and durable job store."""
