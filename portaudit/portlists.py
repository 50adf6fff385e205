from __future__ import annotations

from typing import Dict, Optional, Tuple

MIN_PORT = 1
MAX_PORT = 65535

# Los 100 puertos TCP mas frecuentes segun nmap-services.
TOP_100: Tuple[int, ...] = (
    7, 9, 13, 21, 22, 23, 25, 26, 37, 53, 79, 80, 81, 88, 106, 110, 111, 113,
    119, 135, 139, 143, 144, 179, 199, 389, 427, 443, 444, 445, 465, 513, 514,
    515, 543, 544, 548, 554, 587, 631, 646, 873, 990, 993, 995, 1025, 1026,
    1027, 1028, 1029, 1110, 1433, 1720, 1723, 1755, 1900, 2000, 2001, 2049,
    2121, 2717, 3000, 3128, 3306, 3389, 3986, 4899, 5000, 5009, 5051, 5060,
    5101, 5190, 5357, 5432, 5631, 5666, 5800, 5900, 6000, 6001, 6646, 7070,
    8000, 8008, 8009, 8080, 8081, 8443, 8888, 9100, 9999, 10000, 32768, 49152,
    49153, 49154, 49155, 49156, 49157,
)

_EXTRA_STANDARD: Tuple[int, ...] = (
    1080, 1194, 1434, 1521, 1883, 2082, 2083, 2086, 2087, 2181, 2222, 2375,
    2376, 3268, 3269, 4369, 4443, 4444, 4786, 5222, 5269, 5353, 5601, 5672,
    5683, 5938, 5984, 5985, 5986, 6379, 6443, 6667, 7001, 7002, 7474, 7547,
    8001, 8002, 8005, 8082, 8083, 8086, 8088, 8089, 8090, 8161, 8180, 8200,
    8291, 8333, 8500, 8530, 8531, 8834, 8880, 8883, 8983, 9000, 9001, 9042,
    9043, 9060, 9090, 9091, 9092, 9200, 9300, 9418, 9443, 9999, 10250, 11211,
    15672, 27017, 27018, 28017, 50000, 50070,
)

# Aproximadamente los 1000 puertos de un escaneo estandar: rango privilegiado
# completo mas los servicios altos habituales.
STANDARD: Tuple[int, ...] = tuple(sorted(set(range(1, 1025)) | set(TOP_100) | set(_EXTRA_STANDARD)))

PRESETS = ("quick", "standard", "full")

# Puerto -> (etiqueta de protocolo, producto)
WELL_KNOWN_SERVICES: Dict[int, Tuple[str, Optional[str]]] = {
    21: ("ftp", None),
    22: ("ssh", None),
    23: ("telnet", None),
    25: ("smtp", None),
    53: ("dns", None),
    80: ("http", None),
    110: ("pop3", None),
    111: ("rpcbind", None),
    123: ("ntp", None),
    135: ("msrpc", None),
    137: ("netbios-ns", None),
    139: ("netbios-ssn", None),
    143: ("imap", None),
    161: ("snmp", None),
    389: ("ldap", None),
    443: ("https", None),
    445: ("smb", None),
    465: ("smtps", None),
    587: ("submission", None),
    636: ("ldaps", None),
    993: ("imaps", None),
    995: ("pop3s", None),
    1433: ("mssql", "microsoft sql server"),
    1521: ("oracle", "oracle database"),
    1723: ("pptp", None),
    1900: ("ssdp", None),
    2049: ("nfs", None),
    3306: ("mysql", "mysql"),
    3389: ("rdp", "microsoft terminal services"),
    5432: ("postgresql", "postgresql"),
    5900: ("vnc", None),
    5985: ("winrm", None),
    6379: ("redis", "redis"),
    8080: ("http-proxy", None),
    8443: ("https-alt", None),
    9200: ("elasticsearch", "elasticsearch"),
    11211: ("memcached", "memcached"),
    27017: ("mongodb", "mongodb"),
}


def service_for_port(port: int) -> Optional[Tuple[str, Optional[str]]]:
    return WELL_KNOWN_SERVICES.get(port)
