"""MindSpace access control: role/permission catalog, decisions, guard and service."""
