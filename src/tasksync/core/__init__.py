"""Pure data types and rules: tasks, pending operations, config, errors."""
