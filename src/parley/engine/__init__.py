"""Provider-agnostic turn engine: event normalization, tool messages, approvals, sessions."""
