"""Core connector logic, independent of the CLI.

Module Structure:
    - resources.py  : Normalized resource / entitlement / grant model
    - servicenow/   : ServiceNow Table API client and services

Import explicitly when needed:
    from snow_connector.core.resources import Grant, ResourceId
    from snow_connector.core.servicenow import ServiceNowClient, RoleService
"""
