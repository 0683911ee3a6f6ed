"""LeadSync — CRM synchronization and My-500 prioritization engine."""
