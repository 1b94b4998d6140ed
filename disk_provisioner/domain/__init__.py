"""Domain objects shared by the storage and provisioning layers."""
