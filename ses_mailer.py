import mimetypes
from email.message import EmailMessage
from email.utils import make_msgid
from pathlib import Path
from typing import Iterable, Optional, Sequence

import boto3


class SesMailer(object):
    """Operator alert e-mail over Amazon SES, with optional inline chart images."""

    def __init__(self, region, access_key, secret_key, from_address, charset="UTF-8"):
        self.client = boto3.client(
            "ses",
            region_name=region,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
        )
        self.charset = charset
        self.from_address = from_address

    def send_text(self, to_addresses: Sequence[str], subject: str, body: str) -> None:
        to_addresses = [a for a in to_addresses if a]
        if not to_addresses:
            return
        self.client.send_email(
            Destination={"ToAddresses": to_addresses},
            Message={
                "Body": {"Text": {"Charset": self.charset, "Data": body}},
                "Subject": {"Charset": self.charset, "Data": subject},
            },
            Source=self.from_address,
        )

    def send_alert(
        self,
        to_addresses: Sequence[str],
        subject: str,
        body: str,
        charts: Optional[Iterable[Path]] = None,
    ) -> None:
        """
        Send the alert text as HTML with each chart shown inline (multipart/related).

        Falls back to a plain text mail when there is no chart on disk.
        """
        charts = [Path(p) for p in (charts or []) if Path(p).exists()]
        if not charts:
            self.send_text(to_addresses, subject, body)
            return

        to_addresses = [a for a in to_addresses if a]
        if not to_addresses:
            return

        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.from_address
        msg["To"] = ", ".join(to_addresses)
        msg.set_content(body)

        cids = {p: make_msgid(domain="flood-monitor").strip("<>") for p in charts}
        paragraphs = "".join(f"<p>{line}</p>" for line in body.splitlines() if line)
        images = "".join(
            f'<p><img src="cid:{cid}" alt="{p.stem}"/></p>' for p, cid in cids.items()
        )
        msg.add_alternative(
            f"<html><body>{paragraphs}{images}</body></html>", subtype="html"
        )

        html_part = msg.get_payload()[1]
        for p, cid in cids.items():
            mtype, _ = mimetypes.guess_type(str(p))
            maintype, subtype = (mtype or "image/png").split("/", 1)
            html_part.add_related(
                p.read_bytes(),
                maintype=maintype,
                subtype=subtype,
                cid=f"<{cid}>",
                filename=p.name,
            )

        # SendRawEmail keeps the related parts intact
        self.client.send_raw_email(
            Source=self.from_address,
            Destinations=list(to_addresses),
            RawMessage={"Data": msg.as_bytes()},
        )
