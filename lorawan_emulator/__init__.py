"""
LoRaWAN cold-chain emulator: platform sync, TTN provisioning and uplink ingestion
"""
__version__ = "1.4.0"
