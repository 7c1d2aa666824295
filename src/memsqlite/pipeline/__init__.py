"""Write pipeline: transactional execution, repair and audit logging."""
