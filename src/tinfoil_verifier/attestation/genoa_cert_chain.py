"""
AMD Genoa root (ARK-Genoa) and intermediate (SEV-Genoa) certificates.

These are the default trust anchors for VCEK verification. AMD publishes
both at https://kdsintf.amd.com/vcek/v1/Genoa/cert_chain (ASK first, then
ARK).
"""

# TODO: paste the PEM blocks served by the AMD KDS cert_chain URL above;
# until then the default trust anchors refuse every report.
ARK_CERT = b""

ASK_CERT = b""
