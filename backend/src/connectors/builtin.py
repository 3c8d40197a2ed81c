"""
Built-in connector declarations.

Declared in the same camelCase document shape that JSON declarations in
CONNECTOR_DEFINITIONS_PATH use, and parsed through the same models.
"""

from .definitions import ConnectorDefinition

_ERROR_SCHEMA = {
    "type": "object",
    "properties": {"error": {"type": "string"}, "message": {"type": "string"}},
}

NHS_GP_CONNECT = ConnectorDefinition.model_validate({
    "id": "nhs_gp_connect",
    "name": "NHS GP Connect",
    "description": "Connect to NHS GP systems for patient data and appointments",
    "version": "1.0.0",
    "category": "healthcare",
    "icon": "hospital",
    "color": "#005EB8",
    "enabled": True,
    "authentication": {
        "type": "oauth2",
        "required": True,
        "config": {
            "authorizationUrl": "https://auth.service.nhs.uk/authorize",
            "tokenUrl": "https://auth.service.nhs.uk/token",
            "scope": ["patient/*.read", "appointment/*.write"],
        },
    },
    "endpoints": [
        {
            "id": "book_appointment",
            "name": "Book Appointment",
            "description": "Book a new appointment for a patient",
            "method": "POST",
            "path": "/appointments",
            "parameters": [
                {"name": "patientId", "type": "string", "required": True, "description": "Patient ID"},
                {
                    "name": "appointmentType",
                    "type": "string",
                    "required": True,
                    "description": "Type of appointment",
                    "validation": {"enum": ["routine", "urgent", "follow_up"]},
                },
            ],
            "requestBody": {
                "contentType": "application/json",
                "schema": {
                    "type": "object",
                    "properties": {
                        "preferredDate": {"type": "string", "format": "date"},
                        "reason": {"type": "string"},
                        "notes": {"type": "string"},
                    },
                    "required": ["preferredDate", "reason"],
                },
                "required": True,
                "validation": {
                    "required": ["preferredDate", "reason"],
                    "optional": ["notes"],
                    "dataTypes": {"preferredDate": "string", "reason": "string", "notes": "string"},
                },
            },
            "response": {
                "statusCodes": {
                    201: {
                        "description": "Appointment booked successfully",
                        "schema": {
                            "type": "object",
                            "properties": {
                                "appointmentId": {"type": "string"},
                                "appointmentDate": {"type": "string"},
                                "status": {"type": "string"},
                            },
                        },
                    },
                },
                "defaultSchema": _ERROR_SCHEMA,
                "errorHandling": {
                    "retryableErrors": ["timeout", "network_error"],
                    "nonRetryableErrors": ["invalid_patient", "appointment_conflict"],
                },
            },
            "authentication": True,
            "rateLimit": 100,
            "timeout": 30000,
        },
    ],
    "dataMapping": {
        "inbound": [
            {
                "id": "patient_demographics",
                "name": "Patient Demographics",
                "source": "patient.demographics",
                "target": "resident.personalDetails",
                "required": True,
            },
        ],
        "outbound": [
            {
                "id": "appointment_booking",
                "name": "Appointment Booking",
                "source": "resident.appointment",
                "target": "appointment.booking",
                "required": True,
            },
        ],
    },
    "transformations": [
        {
            "id": "map_nhs_number",
            "name": "Map NHS Number",
            "type": "field",
            "source": "nhsNumber",
            "target": "residentId",
            "operation": "map",
            "enabled": True,
        },
    ],
    # Instance configuration: the practice's ODS code and the GP Connect base URL
    "validation": {
        "required": ["ods_code"],
        "optional": ["base_url"],
        "dataTypes": {"ods_code": "string", "base_url": "string"},
    },
    "rateLimiting": {
        "enabled": True,
        "requestsPerMinute": 100,
        "requestsPerHour": 1000,
        "requestsPerDay": 10000,
        "burstLimit": 10,
        "windowSize": 60,
    },
    "retryPolicy": {
        "enabled": True,
        "maxRetries": 3,
        "baseDelay": 1000,
        "maxDelay": 10000,
        "backoffMultiplier": 2,
        "retryableErrors": ["timeout", "network_error"],
    },
    "metadata": {
        "provider": "NHS",
        "documentation": "https://developer.nhs.uk/apis/gpconnect/",
        "support": "support@nhs.uk",
    },
})

IOT_WEARABLES = ConnectorDefinition.model_validate({
    "id": "iot_wearables",
    "name": "IoT Wearables",
    "description": "Connect to IoT devices and wearables for health monitoring",
    "version": "1.0.0",
    "category": "iot",
    "icon": "watch",
    "color": "#00A651",
    "enabled": True,
    "authentication": {
        "type": "api_key",
        "required": True,
        "config": {"headerName": "X-API-Key", "keyLocation": "header"},
    },
    "endpoints": [
        {
            "id": "send_vital_signs",
            "name": "Send Vital Signs",
            "description": "Send vital signs data from wearable device",
            "method": "POST",
            "path": "/vital-signs",
            "parameters": [
                {"name": "deviceId", "type": "string", "required": True, "description": "Device ID"},
                {"name": "residentId", "type": "string", "required": True, "description": "Resident ID"},
            ],
            "requestBody": {
                "contentType": "application/json",
                "schema": {
                    "type": "object",
                    "properties": {
                        "heartRate": {"type": "number"},
                        "bloodPressure": {"type": "object"},
                        "temperature": {"type": "number"},
                        "timestamp": {"type": "string", "format": "date-time"},
                    },
                    "required": ["heartRate", "timestamp"],
                },
                "required": True,
                "validation": {
                    "required": ["heartRate", "timestamp"],
                    "optional": ["bloodPressure", "temperature"],
                    "dataTypes": {
                        "heartRate": "number",
                        "bloodPressure": "object",
                        "temperature": "number",
                        "timestamp": "string",
                    },
                    "ranges": {
                        "heartRate": {"min": 30, "max": 200},
                        "temperature": {"min": 30, "max": 45},
                    },
                },
            },
            "response": {
                "statusCodes": {
                    200: {
                        "description": "Vital signs received successfully",
                        "schema": {
                            "type": "object",
                            "properties": {"success": {"type": "boolean"}, "message": {"type": "string"}},
                        },
                    },
                },
                "defaultSchema": _ERROR_SCHEMA,
                "errorHandling": {
                    "retryableErrors": ["timeout", "network_error"],
                    "nonRetryableErrors": ["invalid_device", "invalid_data"],
                },
            },
            "authentication": True,
            "rateLimit": 1000,
            "timeout": 5000,
        },
    ],
    "dataMapping": {
        "inbound": [
            {
                "id": "vital_signs",
                "name": "Vital Signs",
                "source": "device.vitalSigns",
                "target": "resident.vitalSigns",
                "required": True,
            },
        ],
    },
    "transformations": [
        {
            "id": "normalize_heart_rate",
            "name": "Normalize Heart Rate",
            "type": "field",
            "source": "heartRate",
            "target": "normalizedHeartRate",
            "operation": "calculate",
            "parameters": {"formula": "heartRate * 1.0", "variables": {"heartRate": "heartRate"}},
            "enabled": True,
        },
    ],
    "validation": {
        "optional": ["base_url"],
        "dataTypes": {"base_url": "string"},
    },
    "rateLimiting": {
        "enabled": True,
        "requestsPerMinute": 1000,
        "requestsPerHour": 10000,
        "requestsPerDay": 100000,
        "burstLimit": 100,
        "windowSize": 60,
    },
    "retryPolicy": {
        "enabled": True,
        "maxRetries": 5,
        "baseDelay": 500,
        "maxDelay": 5000,
        "backoffMultiplier": 1.5,
        "retryableErrors": ["timeout", "network_error"],
    },
    "metadata": {
        "provider": "IoT Platform",
        "documentation": "https://docs.iotplatform.com/",
        "support": "support@iotplatform.com",
    },
})

BUILTIN_CONNECTORS = (NHS_GP_CONNECT, IOT_WEARABLES)
